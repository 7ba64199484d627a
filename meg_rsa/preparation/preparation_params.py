"""
Parameter definitions for source mesh preparation.
"""

# Spatial downsampling: number of vertices kept per hemisphere when no mask is given
TARGET_RESOLUTION = 10242
# Keep every n-th sample
TEMPORAL_DOWNSAMPLE_RATE = 10
# "skip", "overwrite", "ask" or "per_file"
OVERWRITE_POLICY = "skip"
# Default answer to the interactive overwrite question
DEFAULT_RESPONSE = "S"

SOURCE_MESH_DATASET = "sourceMeshes"
