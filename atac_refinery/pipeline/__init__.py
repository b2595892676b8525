"""Stage orchestration and run logging.

Example Usage
-------------
>>> from atac_refinery.pipeline import PipelineLogger, StageRunner
>>> plog = PipelineLogger("logs/")
>>> plog.setup()
>>> runner = StageRunner(plog)
>>> runner.register_stage("normalize", normalize_func)
>>> results = runner.run()
"""

__version__ = "1.0.0"

# Logging
from .logger import (
    ColoredFormatter,
    PipelineLogger,
)

# Execution
from .executor import StageRunner
from ..core.cancellation import CancellationToken

__all__ = [
    # Version
    "__version__",
    # Logging
    "ColoredFormatter",
    "PipelineLogger",
    # Execution
    "CancellationToken",
    "StageRunner",
]
