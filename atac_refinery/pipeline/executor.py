"""In-memory stage runner with cooperative cancellation."""

import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from ..core.cancellation import CancellationToken
from .logger import PipelineLogger


class StageRunner:
    """Runs registered stage functions in dependency order.

    Stages run strictly one after another. The cancellation token is
    checked before every stage; a stage already running is never
    interrupted by the runner.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Stage event logger

    Example
    -------
    >>> runner = StageRunner()
    >>> runner.register_stage("normalize", normalize_func)
    >>> runner.register_stage("embed", embed_func, depends_on=["normalize"])
    >>> results = runner.run(token=CancellationToken())
    """

    def __init__(self, logger: Optional[PipelineLogger] = None):
        self.logger = logger
        self.stages: Dict[str, Dict[str, Any]] = {}
        self.completed_stages: List[str] = []
        self.timings: Dict[str, float] = {}

    def register_stage(
        self,
        stage_id: str,
        func: Callable[..., Any],
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
    ) -> None:
        """Register a stage function.

        The function is called as ``func(stage_results=..., **kwargs)``.
        """
        if stage_id in self.stages:
            raise ValueError(f"Stage '{stage_id}' already registered")
        self.stages[stage_id] = {
            "func": func,
            "depends_on": list(depends_on or []),
            "name": name or stage_id,
        }

    def execution_order(self) -> List[str]:
        """Topological order; independent stages keep registration order."""
        for stage_id, stage in self.stages.items():
            unknown = [d for d in stage["depends_on"] if d not in self.stages]
            if unknown:
                raise ValueError(f"Stage '{stage_id}' depends on unknown stage(s) {unknown}")

        in_degree = {sid: len(stage["depends_on"]) for sid, stage in self.stages.items()}
        queue = deque(sid for sid, degree in in_degree.items() if degree == 0)
        order: List[str] = []
        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)
            for other_id, other in self.stages.items():
                if stage_id in other["depends_on"]:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ValueError("Circular dependency detected")
        return order

    def run(
        self, token: Optional[CancellationToken] = None, **kwargs
    ) -> Dict[str, Any]:
        """Execute all registered stages in order.

        Returns
        -------
        Dict[str, Any]
            Map of stage_id to stage result

        Raises
        ------
        CancelledError
            If cancellation is requested before a stage starts
        """
        results: Dict[str, Any] = {}
        for stage_id in self.execution_order():
            if token is not None:
                token.raise_if_cancelled(stage_id)
            stage = self.stages[stage_id]
            if self.logger:
                self.logger.log_stage_start(stage_id, stage["name"])

            start = time.time()
            try:
                results[stage_id] = stage["func"](stage_results=results, **kwargs)
            except Exception as e:
                if self.logger:
                    self.logger.log_stage_error(stage_id, str(e))
                raise
            self.timings[stage_id] = time.time() - start
            self.completed_stages.append(stage_id)
            if self.logger:
                self.logger.log_stage_complete(stage_id, self.timings[stage_id])
        return results
