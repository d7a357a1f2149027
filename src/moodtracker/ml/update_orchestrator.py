"""Model personalization: encode samples, update, persist, reload.

Architecture:
    update() -> asyncio.Lock gate -> ThreadPoolExecutor(1) -> encode / apply_update / save

Only one update runs per orchestrator. A call made while another is in
flight is rejected with ``UpdateFailure.BUSY`` rather than queued, so two
updates can never race on the store's canonical path. Failed updates are
reported once and never retried.

A timed-out update cannot be interrupted on its worker thread. Until it
returns, the orchestrator keeps reporting busy and its result is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Literal, TypeVar

from moodtracker.ml.artifact import ArtifactError
from moodtracker.ml.model_store import ModelStoreError
from moodtracker.ml.sample_encoder import Sample
from moodtracker.ml.update_task import apply_update

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    import numpy as np
    from numpy.typing import NDArray

    from moodtracker.ml.artifact import ModelArtifact
    from moodtracker.ml.model_provider import LoadedModel, ModelProvider
    from moodtracker.ml.model_store import ModelStore
    from moodtracker.ml.sample_encoder import SampleEncoder, TrainingRecord

    UpdateProcedure = Callable[[LoadedModel, Sequence[TrainingRecord]], ModelArtifact]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UpdateState(StrEnum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    FAILED = "failed"


class UpdateFailure(StrEnum):
    EMPTY_BATCH = "empty_batch"
    BUSY = "busy"
    UPDATE_FAILED = "update_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of one update call."""

    state: UpdateState
    artifact: ModelArtifact | None = None
    failure: UpdateFailure | None = None
    detail: str | None = None
    records: int = 0

    @property
    def ok(self) -> bool:
        return self.state == UpdateState.COMPLETED


class UpdateOrchestrator:
    """Serializes update-and-save sequences for one classifier."""

    def __init__(
        self,
        provider: ModelProvider,
        store: ModelStore,
        encoder: SampleEncoder,
        *,
        update_base: Literal["active", "bundled"] = "active",
        timeout: float | None = None,
        procedure: UpdateProcedure = apply_update,
    ) -> None:
        self._provider = provider
        self._store = store
        self._encoder = encoder
        self._update_base = update_base
        self._timeout = timeout
        self._procedure = procedure

        self._lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-update")
        self._state = UpdateState.IDLE
        self._abandoned: asyncio.Future[ModelArtifact] | None = None

    @property
    def is_updating(self) -> bool:
        """True while an update holds the gate or a timed-out one is still running."""
        if self._lock.locked():
            return True
        return self._abandoned is not None and not self._abandoned.done()

    @property
    def state(self) -> UpdateState:
        """State of the most recent update call."""
        return self._state

    async def update_model(self, image: NDArray[np.uint8], label: str) -> UpdateResult:
        """Personalize the model with a single corrected sample."""
        return await self.update([Sample(image=image, label=label)])

    async def update(self, samples: Iterable[Sample]) -> UpdateResult:
        """Encode ``samples``, apply them to the model and persist the result."""
        if self.is_updating:
            logger.warning("Model update already in progress, rejecting new request")
            return UpdateResult(
                state=UpdateState.FAILED,
                failure=UpdateFailure.BUSY,
                detail="Another model update is in progress",
            )

        async with self._lock:
            batch = list(samples)
            try:
                base = await self._run_in_executor(self._base_model)
            except (ArtifactError, OSError) as exc:
                logger.error("Cannot load the model to update: %s", exc)
                result = UpdateResult(state=UpdateState.FAILED, failure=UpdateFailure.UPDATE_FAILED, detail=str(exc))
            else:
                records: list[TrainingRecord] = []
                try:
                    records = await self._run_in_executor(self._encoder.encode_batch, batch, base)
                    result = await self._submit(base, records)
                finally:
                    self._encoder.discard(records)
            self._state = result.state
            return result

    async def reset(self) -> bool | None:
        """Drop the personalized model and go back to the bundled one.

        Returns:
            True if a persisted model was removed, False if there was none,
            None if an update is in progress.

        Raises:
            ModelStoreError: If the persisted model cannot be removed.
        """
        if self.is_updating:
            return None
        async with self._lock:
            removed = await self._run_in_executor(self._store.clear)
            await self._run_in_executor(self._provider.refresh)
            self._state = UpdateState.IDLE
            return removed

    def shutdown(self) -> None:
        """Shut down the update thread pool."""
        self._executor.shutdown(wait=True, cancel_futures=True)

    # -- Internal -----------------------------------------------------------

    async def _submit(self, base: LoadedModel, records: list[TrainingRecord]) -> UpdateResult:
        if not records:
            logger.warning("Failed to create update task: no usable training samples")
            return UpdateResult(
                state=UpdateState.FAILED,
                failure=UpdateFailure.EMPTY_BATCH,
                detail="No sample could be encoded for the model",
            )

        self._state = UpdateState.SUBMITTED
        logger.info(
            "Submitting %d record(s) to update %s v%s",
            len(records),
            base.artifact.name,
            base.artifact.version,
        )
        task = asyncio.get_running_loop().run_in_executor(self._executor, self._procedure, base, records)
        try:
            # Shielded so a timeout leaves the running task observable.
            artifact = await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout)
        except TimeoutError:
            logger.error("Model update did not finish within %ss", self._timeout)
            self._abandon(task)
            return UpdateResult(
                state=UpdateState.FAILED,
                failure=UpdateFailure.TIMEOUT,
                detail=f"Update did not finish within {self._timeout}s",
                records=len(records),
            )
        except Exception as exc:  # noqa: BLE001 - any procedure error is one failed update
            logger.exception("Model update failed")
            return UpdateResult(
                state=UpdateState.FAILED,
                failure=UpdateFailure.UPDATE_FAILED,
                detail=str(exc),
                records=len(records),
            )

        try:
            await self._run_in_executor(self._store.save, artifact)
        except ModelStoreError as exc:
            logger.error("Could not save the updated model: %s", exc)
            return UpdateResult(
                state=UpdateState.FAILED,
                failure=UpdateFailure.PERSISTENCE_FAILED,
                detail=str(exc),
                records=len(records),
            )

        await self._run_in_executor(self._provider.refresh)
        return UpdateResult(state=UpdateState.COMPLETED, artifact=artifact, records=len(records))

    def _abandon(self, task: asyncio.Future[ModelArtifact]) -> None:
        """Keep the orchestrator busy until a timed-out update actually stops."""
        self._abandoned = task
        task.add_done_callback(self._abandoned_done)

    @staticmethod
    def _abandoned_done(task: asyncio.Future[ModelArtifact]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Timed-out model update failed afterwards: %s", exc)
        else:
            logger.info("Timed-out model update finished, result discarded")

    def _base_model(self) -> LoadedModel:
        if self._update_base == "bundled":
            return self._provider.bundled()
        return self._provider.current()

    async def _run_in_executor(self, func: Callable[..., T], *args: object) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)
