import numpy as np
import SimpleITK as sitk


def gaussian_sigma_for_kernel(kernel_size: int) -> float:
    """Gaussian sigma matching a kernel width (same rule as OpenCV's getGaussianKernel)"""
    return 0.3 * ((kernel_size - 1) * 0.5 - 1) + 0.8


def gaussian_blur(image_array: np.ndarray, kernel_size: int) -> np.ndarray:
    """Gaussian blur of a 2D image or a (z, y, x) volume

    Args:
        image_array: Input array
        kernel_size: Width of the Gaussian kernel in voxels

    Returns:
        Blurred array (float32) with the same shape as the input
    """
    image = sitk.GetImageFromArray(np.asarray(image_array, dtype=np.float32))

    gaussian = sitk.DiscreteGaussianImageFilter()
    gaussian.SetVariance(gaussian_sigma_for_kernel(kernel_size) ** 2)
    gaussian.SetMaximumKernelWidth(int(kernel_size))
    gaussian.SetUseImageSpacing(False)
    blurred = gaussian.Execute(image)

    return sitk.GetArrayFromImage(blurred)


def mean_blur(image_array: np.ndarray, window_size: int) -> np.ndarray:
    """Box (mean) filter of a 2D image or a (z, y, x) volume

    Args:
        image_array: Input array
        window_size: Width of the averaging window in voxels

    Returns:
        Blurred array (float32) with the same shape as the input
    """
    image = sitk.GetImageFromArray(np.asarray(image_array, dtype=np.float32))

    mean = sitk.MeanImageFilter()
    mean.SetRadius(max(int(window_size) // 2, 1))
    blurred = mean.Execute(image)

    return sitk.GetArrayFromImage(blurred)
