from setuptools import setup, find_packages

setup(
    name="vessel_reconstruction",
    version="0.1",
    packages=find_packages(exclude=['tests']),
    py_modules=['run_rings_reduction', 'run_model_fitting'],
    install_requires=[
        'numpy',
        'SimpleITK',
        'scipy',
        'scikit-image',
        'tqdm'
    ],
    extras_require={
        'vtk': ['vtk'],
        'test': ['pytest'],
    },
)
