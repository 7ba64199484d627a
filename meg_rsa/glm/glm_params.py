"""
Parameter definitions for the searchlight dynamic GLM.
"""

# Lag of the model timelines relative to the data, in ms
LAG_MS = 0
N_JOBS = -2  # -1 for all cores, -2 for all but one

AVERAGE_RDM_DATASET = "average_slRDMs"
MODEL_DATASET = "models"

# Output file stems, written as <stem>-<lh|rh>.<ext>
BETAS = "GLM_mesh_betas"
DEVIANCES = "GLM_mesh_deviances"
ILL_CONDITIONED = "GLM_mesh_ill_conditioned"
MAX_BETAS = "GLM_mesh_max_betas"
MAX_BETA_IS = "GLM_mesh_max_beta_is"
BETAS_MEDIAN = "GLM_mesh_betas_median"
MAX_BETAS_MEDIAN = "GLM_mesh_max_betas_median"
MAX_BETA_IS_MEDIAN = "GLM_mesh_max_beta_is_median"
BETAS_MODEL = "GLM_mesh_betas_model_{model}"
BETAS_MODEL_MEDIAN = "GLM_mesh_betas_model_{model}_median"
