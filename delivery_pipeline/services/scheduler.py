"""
Concurrent execution of pipeline runs.

Runs are sequential inside; independent runs execute side by side on a
thread pool. Each run gets its own database session and controller.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from sqlalchemy.orm import Session, sessionmaker

from delivery_pipeline.exceptions import ValidationError
from delivery_pipeline.models.models import PipelineRun
from delivery_pipeline.services.cancellation import CancellationToken
from delivery_pipeline.services.pipeline_service import PipelineService
from delivery_pipeline.utils.logging import get_logger

logger = get_logger(__name__)

PipelineFactory = Callable[[Session], PipelineService]


class PipelineScheduler:
    """
    Triggers, tracks and cancels pipeline runs.

    Example:
        >>> scheduler = PipelineScheduler(session_factory, pipeline_factory, max_workers=3)
        >>> run = scheduler.trigger(resolved_source_version="a1b2c3d4e5f6")
        >>> scheduler.wait(run.id).status
        'succeeded'
    """

    def __init__(self, session_factory: sessionmaker, pipeline_factory: PipelineFactory, max_workers: int = 3):
        self.session_factory = session_factory
        self.pipeline_factory = pipeline_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipeline-run")
        self._tokens: Dict[int, CancellationToken] = {}
        self._futures: Dict[int, Future] = {}
        self._lock = threading.Lock()

    @contextmanager
    def pipeline(self) -> Iterator[PipelineService]:
        """Yield a controller bound to a fresh session, closing it afterwards."""
        session = self.session_factory()
        try:
            yield self.pipeline_factory(session)
        finally:
            session.close()

    def trigger(self, resolved_source_version: Optional[str] = None, triggered_by: str = "api") -> PipelineRun:
        """
        Create a run and schedule its execution.

        Returns:
            The created run, still pending
        """
        with self.pipeline() as controller:
            pipeline_run = controller.create_pipeline_run(
                resolved_source_version=resolved_source_version,
                triggered_by=triggered_by,
            )

        run_id = pipeline_run.id
        token = CancellationToken()
        with self._lock:
            self._tokens[run_id] = token
            future = self._executor.submit(self._execute, run_id, token)
            self._futures[run_id] = future
        future.add_done_callback(lambda _: self._forget(run_id))

        logger.info("Scheduled pipeline run", extra={
            'pipeline_run_id': pipeline_run.id,
            'build_number': pipeline_run.build_number,
        })
        return pipeline_run

    def _execute(self, run_id: int, token: CancellationToken) -> PipelineRun:
        try:
            with self.pipeline() as controller:
                return controller.execute_pipeline_run(run_id, cancellation=token)
        except Exception:
            logger.exception("Pipeline run could not be executed", extra={'pipeline_run_id': run_id})
            raise
        finally:
            with self._lock:
                self._tokens.pop(run_id, None)

    def _forget(self, run_id: int) -> None:
        with self._lock:
            self._futures.pop(run_id, None)

    def cancel(self, run_id: int, reason: str = "Cancelled by request") -> None:
        """
        Request cancellation of an active run.

        Raises:
            NotFoundError: If the run doesn't exist
            ValidationError: If the run is no longer active
        """
        with self._lock:
            token = self._tokens.get(run_id)

        if token is None:
            with self.pipeline() as controller:
                pipeline_run = controller.get_pipeline_run(run_id)
            state = "already finished" if pipeline_run.is_terminal else "not active"
            raise ValidationError(
                f"Pipeline run {run_id} is {state}",
                details={'status': pipeline_run.status},
            )

        token.cancel(reason)
        logger.info("Cancellation requested", extra={'pipeline_run_id': run_id, 'reason': reason})

    def is_active(self, run_id: int) -> bool:
        with self._lock:
            return run_id in self._tokens

    def wait(self, run_id: int, timeout: Optional[float] = None) -> PipelineRun:
        """
        Block until a run finishes and return it.

        Only active runs are tracked in memory; a run that already finished
        is read back from the database.

        Raises:
            NotFoundError: If the run doesn't exist
            ValidationError: If the run is unfinished but not scheduled here
        """
        with self._lock:
            future = self._futures.get(run_id)
        if future is not None:
            return future.result(timeout=timeout)

        with self.pipeline() as controller:
            pipeline_run = controller.get_pipeline_run(run_id)
        if not pipeline_run.is_terminal:
            raise ValidationError(f"Pipeline run {run_id} was not scheduled by this process")
        return pipeline_run

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
