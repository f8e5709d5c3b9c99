from tom_ncp.config import NCPConfig, PipelineConfig, load_pipeline_config
from tom_ncp.errors import (
    EmptyInput,
    InvalidInput,
    InvalidRank,
    LabelMismatch,
    NCPError,
    NumericDegeneracy,
    ShapeMismatch,
)
from tom_ncp.factor_export import factors_to_frames, write_convergence, write_factors
from tom_ncp.factor_match import align_factors, best_permutation, factor_match_score
from tom_ncp.hals import ConvergenceRecord, NCPResult, NonnegativeCP, ncp_hals
from tom_ncp.restarts import RestartResult, fit_restarts
from tom_ncp.tensor_assembly import (
    LabeledTensor,
    assemble_tensor,
    load_condition_tensor,
    read_similarity_matrix,
)

__version__ = "0.1.0"
