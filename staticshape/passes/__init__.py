from .passes import (
    Pass, PassResult,
    default_pipeline, run_pipeline, eliminate_dead_code,
)
from .dynamic_to_static import (
    DynamicToStaticShape, RewriteRecord, Transformation, TransformationRegistry,
    default_transformations, dispatch, is_dynamic, validate_static_shapes,
)
from .rewrites import (
    materialize, static_data,
    dynamic_to_static_binary_eltwise, dynamic_to_static_unary_eltwise,
    dynamic_to_static_transpose, dynamic_to_static_squeeze,
    dynamic_to_static_unsqueeze, dynamic_to_static_non_zero,
    dynamic_to_static_non_max_suppression, dynamic_to_static_roi_align,
    no_op,
)
