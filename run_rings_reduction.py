import argparse
import logging
import os

import numpy as np
import SimpleITK as sitk

from vessel_reconstruction.rings_reduction import (
    PolarRDOption,
    RingsParameters,
    mmd_polar_rd,
    mmd_polar_rd_3d,
    polar_rd,
    sijbers,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

METHODS = ['sijbers', 'polar-avg', 'polar-med', 'mmd']


def parse_args():
    parser = argparse.ArgumentParser(description='Ring artifact reduction for tomographic slices')
    parser.add_argument('--input', type=str, required=True,
                        help='Input image file (2D image or 3D volume)')
    parser.add_argument('--output', type=str, required=True,
                        help='Output image file')
    parser.add_argument('--method', type=str, default='mmd', choices=METHODS,
                        help='Correction method')
    parser.add_argument('--center', type=float, nargs=2, required=True, metavar=('X', 'Y'),
                        help='Ring center in pixels (on the first slice for mmd)')
    parser.add_argument('--last-center', type=float, nargs=2, metavar=('X', 'Y'),
                        help='Ring center on the last slice (mmd on volumes, default: --center)')
    parser.add_argument('--save-correction', type=str,
                        help='Save the correction vector(s) to this .npy file')

    # Parameter selection options
    param_group = parser.add_argument_group('Parameter Selection')
    param_group.add_argument('--parameter-set', type=str, default='default',
                             choices=list(RingsParameters.get_parameter_sets().keys()),
                             help='Predefined parameter set')

    # Individual parameter overrides
    override_group = parser.add_argument_group('Parameter Overrides')
    override_group.add_argument('--dr', type=float,
                                help='Ring thickness in pixels (default: 1.0)')
    override_group.add_argument('--window-size', type=int,
                                help='Blur window size for sijbers (default: 15)')
    override_group.add_argument('--subpixel-on-ring', type=float,
                                help='Arc length between samples for polar methods (default: 1.0)')
    override_group.add_argument('--workers', type=int,
                                help='Number of worker threads')
    override_group.add_argument('--gaussian', action='store_true',
                                help='Use Gaussian instead of mean blur for sijbers')

    args = parser.parse_args()

    # Collect custom parameters if any are specified
    custom_params = {}
    if args.dr is not None:
        custom_params['dr'] = args.dr
    if args.window_size is not None:
        custom_params['window_size'] = args.window_size
    if args.subpixel_on_ring is not None:
        custom_params['subpixel_on_ring'] = args.subpixel_on_ring
    if args.workers is not None:
        custom_params['num_workers'] = args.workers
    if args.gaussian:
        custom_params['is_gaussian_blur'] = True

    args.custom_params = custom_params if custom_params else None
    return args


def run_rings_reduction(image_array, method, params, center, last_center=None):
    """Run one of the ring reduction methods on an image array

    Returns:
        corrected: Corrected image array
        correction: Correction vector(s) that were applied
    """
    try:
        if method == 'sijbers':
            return sijbers(image_array, params.dr, center,
                           is_gaussian_blur=params.is_gaussian_blur,
                           window_size=params.window_size,
                           num_workers=params.num_workers)
        if method in ('polar-avg', 'polar-med'):
            option = PolarRDOption.AVG_DIFF if method == 'polar-avg' else PolarRDOption.MED_DIFF
            return polar_rd(image_array, option, params.dr, center,
                            subpixel_on_ring=params.subpixel_on_ring)
        if image_array.ndim == 2:
            return mmd_polar_rd(image_array, center, params.dr, num_workers=params.num_workers)
        return mmd_polar_rd_3d(image_array, center, last_center if last_center is not None else center,
                               params.dr, num_workers=params.num_workers)
    except Exception as e:
        logger.error(f"Rings reduction failed: {str(e)}")
        raise


def main():
    # Parse command line arguments
    args = parse_args()

    params = RingsParameters.get_parameter_sets()[args.parameter_set]
    if args.custom_params:
        params = RingsParameters.from_dict(args.custom_params, base=params)
    print(f"Using parameters: {params}")

    # Load input image
    print("Loading input image...")
    input_image = sitk.ReadImage(args.input)
    image_array = sitk.GetArrayFromImage(input_image)
    print(f"Image shape: {image_array.shape}, dtype: {image_array.dtype}")

    logger.info(f"Running {args.method} rings reduction...")
    corrected, correction = run_rings_reduction(
        image_array, args.method, params, args.center, args.last_center
    )

    output_dir = os.path.dirname(args.output)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    output_image = sitk.GetImageFromArray(corrected)
    output_image.CopyInformation(input_image)
    sitk.WriteImage(output_image, args.output)

    if args.save_correction:
        np.save(args.save_correction, correction)

    print(f"Rings reduction complete! Result saved to {args.output}")


if __name__ == "__main__":
    main()
