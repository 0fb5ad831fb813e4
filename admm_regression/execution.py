"""
Execution substrate of the per-partition tasks.

An iteration of a job is a map over partitions: the same function runs once
per partition key, independently of the others, and the driver waits for all
of them (barrier) before it aggregates. The engines here only decide where
the functions run. Task functions must be module level functions and their
arguments picklable, so that every engine can run them.
"""
import logging
from abc import ABC
from abc import abstractmethod
from collections import defaultdict
from concurrent.futures import ProcessPoolExecutor
from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import Mapping
from typing import Optional

from admm_regression.config import EngineType
from admm_regression.config import ExecutionConfig
from admm_regression.exceptions import FormatError
from admm_regression.exceptions import StateError

logger = logging.getLogger(__name__)


class ExecutionEngine(ABC):
    @abstractmethod
    def run_on_partitions(
        self, func: Callable, keyword_args: Mapping[str, Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Runs func(**keyword_args[key]) for every key and returns the results
        by key. An exception raised by any task is raised here.
        """

    def shutdown(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


class InMemoryExecutionEngine(ExecutionEngine):
    """Runs the tasks one after the other in the calling process."""

    def run_on_partitions(self, func, keyword_args):
        return {key: func(**kwargs) for key, kwargs in sorted(keyword_args.items())}


class ProcessPoolExecutionEngine(ExecutionEngine):
    def __init__(self, max_workers: Optional[int] = None):
        self._executor = ProcessPoolExecutor(max_workers=max_workers)

    def run_on_partitions(self, func, keyword_args):
        futures = {
            key: self._executor.submit(func, **kwargs)
            for key, kwargs in sorted(keyword_args.items())
        }
        return {key: future.result() for key, future in futures.items()}

    def shutdown(self):
        self._executor.shutdown(wait=True)


def create_engine(config: ExecutionConfig) -> ExecutionEngine:
    if config.engine == EngineType.IN_MEMORY:
        return InMemoryExecutionEngine()
    if config.engine == EngineType.PROCESS_POOL:
        return ProcessPoolExecutionEngine(max_workers=config.max_workers)
    raise FormatError(f"Unknown execution engine: {config.engine}")


def group_by_key(
    records: Iterable[Mapping], key_field: str = "key"
) -> Dict[str, List[Mapping]]:
    """The shuffle: gathers the records of every key, keeping their order."""
    groups = defaultdict(list)
    for record in records:
        groups[str(record[key_field])].append(record)
    return dict(groups)


def check_barrier(results: Mapping[str, Any], expected_count: int):
    """
    Every task of the step must have delivered before anything is merged.
    """
    delivered = sum(1 for result in results.values() if result is not None)
    logger.info(f"Number of successful models={delivered}")
    if delivered != expected_count:
        raise StateError(
            f"Some models failed! Expected {expected_count} models, got {delivered}."
        )
