import argparse
import logging
import os

import SimpleITK as sitk

from vessel_reconstruction.init_models import each_model_per_local_maximum
from vessel_reconstruction.levenberg_marquardt import (
    FittingParameters,
    LevenbergMarquardt,
    save_model_results,
    save_models_as_vtk,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description='Fit line segment models to vessel enhancement results')
    parser.add_argument('--vesselness', type=str, required=True,
                        help='Vesselness volume (vesselness.nrrd)')
    parser.add_argument('--direction', type=str, required=True,
                        help='Vessel direction volume (vessel_direction.nrrd)')
    parser.add_argument('--sigma', type=str,
                        help='Scale of maximum response (sigma_max.nrrd), used as model radius')
    parser.add_argument('--output-dir', type=str, default='output_model_fitting',
                        help='Directory for the fitted models')
    parser.add_argument('--save-vtk', action='store_true',
                        help='Also save the models as VTK polydata')

    # Initialization options
    init_group = parser.add_argument_group('Model Initialization')
    init_group.add_argument('--threshold', type=float, default=0.1,
                            help='Minimum vesselness of data points (default: 0.1)')
    init_group.add_argument('--min-distance', type=int, default=2,
                            help='Minimum distance between seeded models in voxels (default: 2)')
    init_group.add_argument('--max-label-distance', type=float,
                            help='Leave points farther than this from every model unlabeled')

    # Parameter selection options
    param_group = parser.add_argument_group('Parameter Selection')
    param_group.add_argument('--parameter-set', type=str, default='default',
                             choices=list(FittingParameters.get_parameter_sets().keys()),
                             help='Predefined parameter set for the model fitting')

    # Individual parameter overrides
    override_group = parser.add_argument_group('Parameter Overrides')
    override_group.add_argument('--loglikelihood', type=float,
                                help='Weight of the data cost (default: 1.0)')
    override_group.add_argument('--pairwise-smooth', type=float,
                                help='Weight of the smoothness cost (default: 1.0)')
    override_group.add_argument('--max-iterations', type=int,
                                help='Maximum number of Levenberg-Marquardt iterations (default: 20)')
    override_group.add_argument('--workers', type=int,
                                help='Number of worker threads for the smoothness Jacobian')
    override_group.add_argument('--parallel', action='store_true',
                                help='Build the smoothness Jacobian in parallel')

    args = parser.parse_args()

    # Collect custom parameters if any are specified
    custom_params = {}
    if args.loglikelihood is not None:
        custom_params['loglikelihood'] = args.loglikelihood
    if args.pairwise_smooth is not None:
        custom_params['pairwise_smooth'] = args.pairwise_smooth
    if args.max_iterations is not None:
        custom_params['max_iterations'] = args.max_iterations
    if args.workers is not None:
        custom_params['num_workers'] = args.workers
    if args.parallel:
        custom_params['parallel'] = True

    args.custom_params = custom_params if custom_params else None
    return args


def main():
    # Parse command line arguments
    args = parse_args()
    os.makedirs(args.output_dir, exist_ok=True)

    # Set up file logging
    fh = logging.FileHandler(os.path.join(args.output_dir, 'model_fitting.log'))
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    logging.getLogger().addHandler(fh)

    params = FittingParameters.get_parameter_sets()[args.parameter_set]
    if args.custom_params:
        params = FittingParameters.from_dict(args.custom_params, base=params)
    print(f"Using parameters: {params}")

    print("Loading vessel enhancement results...")
    vesselness = sitk.GetArrayFromImage(sitk.ReadImage(args.vesselness))
    vessel_direction = sitk.GetArrayFromImage(sitk.ReadImage(args.direction))
    sigma_max = sitk.GetArrayFromImage(sitk.ReadImage(args.sigma)) if args.sigma else None

    logger.info("Step 1: Seeding models at local vesselness maxima...")
    try:
        data_points, labelings, modelset, label_volume = each_model_per_local_maximum(
            vesselness,
            vessel_direction,
            sigma_max=sigma_max,
            threshold=args.threshold,
            min_distance=args.min_distance,
            max_label_distance=args.max_label_distance
        )
    except Exception as e:
        logger.error(f"Model initialization failed: {str(e)}")
        raise

    logger.info("Step 2: Levenberg-Marquardt reestimation...")
    try:
        report = LevenbergMarquardt(data_points, labelings, modelset, label_volume, params).reestimate()
    except Exception as e:
        logger.error(f"Model reestimation failed: {str(e)}")
        raise

    logger.info("Step 3: Saving results...")
    save_model_results(modelset, report, args.output_dir)
    sitk.WriteImage(
        sitk.GetImageFromArray(label_volume.astype('int32')),
        os.path.join(args.output_dir, 'label_volume.nrrd')
    )
    if args.save_vtk:
        save_models_as_vtk(modelset, os.path.join(args.output_dir, 'models.vtp'))

    print(f"Model fitting complete! Results saved in {args.output_dir}")
    print(f"Energy: {report.initial_energy:.4e} -> {report.final_energy:.4e} "
          f"after {report.iterations} iterations (converged: {report.converged})")


if __name__ == "__main__":
    main()
