#!/usr/bin/env python3
"""
Searchlight RSA pipeline for source-space MEG data.

Stage 1 prepares the downsampled cortical meshes of every subject. The
searchlight RDMs are computed from these meshes by an external stage and
averaged across subjects; stage 2 fits the dynamic GLM of the model
timelines to the average searchlight RDMs.

Usage:
    meg-rsa --config options.yaml --stage all
    meg-rsa --config options.yaml --stage glm --lag 20
"""
import argparse
import logging
import sys

from meg_rsa.config import configure_run
from meg_rsa.glm.glm_analysis import searchlight_dynamic_glm
from meg_rsa.glm.rdm_dataloader import load_model_timecourses
from meg_rsa.preparation.mesh_dataloader import load_beta_correspondence, prepare_source_meshes
from meg_rsa.utils.hemispheres import Hemisphere, PerHemisphere
from meg_rsa.utils.simple_timing import timed_stage
from meg_rsa.utils.workers import WorkerPool

STAGES = ("prepare", "glm", "all")


def run_pipeline(config, stage="all", masks=None, input_func=input):
    """
    Run the requested pipeline stages with one worker pool.

    Parameters:
    -----------
    config : dict
        Run configuration from ``configure_run``.
    stage : str
        "prepare", "glm" or "all".
    masks : list of IndexMask, optional
        Vertex masks for data preparation.

    Returns:
    --------
    dict
        "preparation" (PreparationReport) and/or "glm" ((glm_paths, lag_metadatas)).
    """
    if stage not in STAGES:
        raise ValueError(f"stage must be one of {STAGES}, got {stage!r}")

    outputs = {}
    with WorkerPool(n_jobs=config["N_JOBS"], backend=config["BACKEND"]) as pool:
        if stage in ("prepare", "all"):
            if config["BETA_CORRESPONDENCE"] is None:
                raise ValueError("beta_correspondence must be set to prepare the source meshes")
            logging.info("Stage 1 - Preparing source meshes:")
            with timed_stage("preparation"):
                betas = load_beta_correspondence(config["BETA_CORRESPONDENCE"])
                outputs["preparation"] = prepare_source_meshes(
                    betas, config, masks=masks, pool=pool, input_func=input_func
                )

        if stage in ("glm", "all"):
            if config["AVERAGE_RDM_PATHS"] is None or config["MODEL_PATH"] is None:
                raise ValueError("average_rdm_paths and model_path must be set to run the GLM")
            logging.info("Stage 2 - Searchlight dynamic GLM:")
            with timed_stage("glm"):
                models, model_names = load_model_timecourses(config["MODEL_PATH"])
                logging.info(f"Loaded {len(model_names)} models: {', '.join(model_names)}")
                average_rdm_paths = PerHemisphere(left=None, right=None)
                for label, path in config["AVERAGE_RDM_PATHS"].items():
                    average_rdm_paths[Hemisphere.from_label(label)] = path
                outputs["glm"] = searchlight_dynamic_glm(
                    average_rdm_paths, models, config["MESH_DIR"], lag_ms=config["LAG_MS"], pool=pool
                )
                for hemi, paths in outputs["glm"][0].items():
                    logging.info(f"{hemi.label}: wrote {len(paths.h5)} HDF5 and {len(paths.stc)} stc files")

    return outputs


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Searchlight dynamic GLM RSA for source-space MEG data")
    parser.add_argument("--config", help="YAML file with user options (default: $MEG_RSA_CONFIG)")
    parser.add_argument("--stage", choices=STAGES, default="all")
    parser.add_argument("--lag", type=float, default=None, help="Lag of the model timelines in ms")
    parser.add_argument("--n-jobs", type=int, default=None)
    parser.add_argument("--overwrite-policy", choices=("skip", "overwrite", "ask", "per_file"), default=None)
    parser.add_argument("--debug", action="store_true", help="Run with a single worker")
    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    args = parse_args(argv)

    config = configure_run(
        args.config,
        lag_ms=args.lag,
        n_jobs=args.n_jobs,
        overwrite_policy=args.overwrite_policy,
        debug=args.debug or None,
    )
    for key, value in config.items():
        logging.info(f"{key}: {value}")

    outputs = run_pipeline(config, stage=args.stage)

    report = outputs.get("preparation")
    if report is not None and report.failed:
        logging.error(f"{len(report.failed)} subject/hemisphere units failed during preparation")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
