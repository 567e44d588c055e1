"""Continuous-capture recognition scheduler.

While a session is active the scheduler samples one frame every
``sample_interval`` seconds and matches it against the live catalog. Two
consecutive samples at or above the auto-accept similarity confirm the
match. If no confirmation arrives within ``escalation_timeout`` seconds of
``start()`` the deadline fires (even with a sample in flight) and the most
recent frame goes to the secondary recognizer, once.

Every asynchronous completion carries the id of the session that started it;
completions for a session that is gone, or that has left the phase which
issued them, are dropped.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Callable, List, Optional, Union

from coverscan.catalog.sources import FrameSource, SecondaryRecognizer
from coverscan.catalog.store import CatalogStore
from coverscan.config import PipelineConfig
from coverscan.errors import DecodeError
from coverscan.hashing.codec import HashCodec
from coverscan.recognition.matcher import MatchEngine, MatchPolicy
from coverscan.recognition.timers import (
    Executor,
    ThreadingTimers,
    TimerFactory,
    TimerHandle,
    default_executor,
)
from coverscan.types import (
    Catalog,
    CatalogEntry,
    MatchCandidate,
    Phase,
    RecognitionOutcome,
    RecognitionSession,
    SecondaryResult,
    SessionUpdate,
    Verdict,
)

LOGGER = logging.getLogger("coverscan.recognition.scheduler")

SAMPLE_INTERVAL = 1.5
ESCALATION_TIMEOUT = 5.0
REQUIRED_CONSECUTIVE = 2

_Event = Union[SessionUpdate, RecognitionOutcome]


class RecognitionScheduler:
    """State machine: IDLE -> SAMPLING -> (CONFIRMING | ESCALATING) -> IDLE."""

    def __init__(
        self,
        frame_source: FrameSource,
        secondary: SecondaryRecognizer,
        catalog: Callable[[], Catalog],
        engine: Optional[MatchEngine] = None,
        policy: Optional[MatchPolicy] = None,
        sample_interval: float = SAMPLE_INTERVAL,
        escalation_timeout: float = ESCALATION_TIMEOUT,
        required_consecutive: int = REQUIRED_CONSECUTIVE,
        timers: Optional[TimerFactory] = None,
        executor: Optional[Executor] = None,
        store: Optional[CatalogStore] = None,
        on_update: Optional[Callable[[SessionUpdate], None]] = None,
        on_outcome: Optional[Callable[[RecognitionOutcome], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        if sample_interval <= 0 or escalation_timeout <= 0:
            raise ValueError("sample_interval and escalation_timeout must be positive")
        self.frame_source = frame_source
        self.secondary = secondary
        self.catalog = catalog
        self.engine = engine or MatchEngine(policy=policy)
        self.policy = policy or self.engine.policy
        self.sample_interval = sample_interval
        self.escalation_timeout = escalation_timeout
        self.required_consecutive = max(1, int(required_consecutive))
        self.timers = timers or ThreadingTimers()
        self._owns_executor = executor is None
        self.executor = executor or default_executor()
        self.store = store
        self.on_update = on_update
        self.on_outcome = on_outcome
        self.on_error = on_error

        self._lock = threading.RLock()
        self._phase = Phase.IDLE
        self._session: Optional[RecognitionSession] = None
        self._generation = 0
        self._tick_handle: Optional[TimerHandle] = None
        self._deadline_handle: Optional[TimerHandle] = None
        self._in_flight_session: Optional[int] = None
        self._paused = False
        self.ticks_skipped = 0
        self.last_error: Optional[BaseException] = None

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        frame_source: FrameSource,
        secondary: SecondaryRecognizer,
        catalog: Callable[[], Catalog],
        **kwargs,
    ) -> "RecognitionScheduler":
        policy = MatchPolicy.from_config(config)
        kwargs.setdefault("engine", MatchEngine(codec=HashCodec(config.hash_bits), policy=policy))
        return cls(
            frame_source=frame_source,
            secondary=secondary,
            catalog=catalog,
            policy=policy,
            sample_interval=config.sample_interval,
            escalation_timeout=config.escalation_timeout,
            required_consecutive=config.required_consecutive,
            **kwargs,
        )

    # ----------------------------------------------------------- properties

    @property
    def phase(self) -> Phase:
        with self._lock:
            return self._phase

    @property
    def session(self) -> Optional[RecognitionSession]:
        with self._lock:
            return self._session

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._session is not None

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._in_flight_session is not None

    # -------------------------------------------------------------- control

    def start(self) -> RecognitionSession:
        """Begin sampling. Starting while a session is active returns that session."""
        events: List[_Event] = []
        with self._lock:
            if self._session is not None:
                LOGGER.debug("Session %d already active (%s)", self._session.session_id, self._phase.value)
                return self._session
            self._generation += 1
            session_id = self._generation
            now = self.timers.now()
            session = RecognitionSession(
                session_id=session_id,
                started_at=now,
                escalation_deadline_at=now + self.escalation_timeout,
            )
            self._session = session
            self._phase = Phase.SAMPLING
            self._in_flight_session = None
            self._paused = False
            self.last_error = None
            self._tick_handle = self.timers.call_every(self.sample_interval, lambda: self._on_tick(session_id))
            self._deadline_handle = self.timers.call_later(
                self.escalation_timeout, lambda: self._on_deadline(session_id)
            )
            LOGGER.info(
                "Session %d sampling every %.1fs, escalation in %.1fs",
                session_id,
                self.sample_interval,
                self.escalation_timeout,
            )
            events.append(SessionUpdate(session_id=session_id, phase=Phase.SAMPLING, consecutive_count=0))
        self._dispatch(events)
        return session

    def stop(self) -> None:
        """Cancel timers and discard the session. Safe to call repeatedly."""
        events: List[_Event] = []
        with self._lock:
            if self._session is None:
                return
            session_id = self._session.session_id
            LOGGER.info("Session %d stopped in phase %s", session_id, self._phase.value)
            self._reset_to_idle()
            events.append(SessionUpdate(session_id=session_id, phase=Phase.IDLE))
        self._dispatch(events)

    def pause(self) -> None:
        """Skip sampling ticks until ``resume``; the deadline keeps running."""
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def shutdown(self) -> None:
        self.stop()
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    # ------------------------------------------------------------- internals

    def _is_current(self, session_id: int, phase: Phase) -> bool:
        return self._session is not None and self._session.session_id == session_id and self._phase == phase

    def _cancel_timers(self) -> None:
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None

    def _reset_to_idle(self) -> None:
        self._cancel_timers()
        self._session = None
        self._phase = Phase.IDLE
        self._in_flight_session = None
        self._paused = False

    def _dispatch(self, events: List[_Event]) -> None:
        for event in events:
            callback = self.on_outcome if isinstance(event, RecognitionOutcome) else self.on_update
            if callback is None:
                continue
            try:
                callback(event)
            except Exception:
                LOGGER.exception("Session %d %s callback failed", event.session_id, type(event).__name__)

    def _submit(self, fn: Callable[..., None], *args) -> None:
        future = self.executor.submit(fn, *args)
        if future is not None:
            future.add_done_callback(_log_job_failure)

    # ------------------------------------------------------------- sampling

    def _on_tick(self, session_id: int) -> None:
        with self._lock:
            if not self._is_current(session_id, Phase.SAMPLING):
                return
            if self._in_flight_session is not None or self._paused:
                self.ticks_skipped += 1
                LOGGER.debug(
                    "Session %d tick skipped (in_flight=%s paused=%s)",
                    session_id,
                    self._in_flight_session is not None,
                    self._paused,
                )
                return
            self._in_flight_session = session_id
        self._submit(self._run_sample, session_id)

    def _run_sample(self, session_id: int) -> None:
        frame: Optional[bytes] = None
        candidate: Optional[MatchCandidate] = None
        try:
            frame = self.frame_source.capture()
            fingerprint = self.engine.codec.compute_fingerprint(frame)
            entries = self.catalog().entries
            candidate = self.engine.find_best(fingerprint, entries, self.policy.match_threshold)
        except DecodeError as exc:
            LOGGER.debug("Session %d frame could not be decoded: %s", session_id, exc)
        except Exception as exc:
            self._fail(session_id, Phase.SAMPLING, exc)
            return
        self._on_sample(session_id, frame, candidate)

    def _on_sample(self, session_id: int, frame: Optional[bytes], candidate: Optional[MatchCandidate]) -> None:
        events: List[_Event] = []
        with self._lock:
            if self._in_flight_session == session_id:
                self._in_flight_session = None
            if not self._is_current(session_id, Phase.SAMPLING):
                LOGGER.debug("Session %d sample result discarded (stale)", session_id)
                return
            session = self._session
            session.samples_taken += 1
            if frame is not None:
                session.last_frame = frame

            if candidate is None or candidate.similarity < self.policy.confidence_floor:
                session.last_verdict = Verdict.NO_MATCH
                session.last_confidence = None
                session.consecutive_high_confidence = 0
            elif candidate.similarity < self.policy.auto_accept:
                session.last_verdict = Verdict.MEDIUM
                session.last_confidence = candidate.similarity
                session.consecutive_high_confidence = 0
            else:
                session.last_verdict = Verdict.HIGH
                session.last_confidence = candidate.similarity
                session.consecutive_high_confidence += 1

            LOGGER.debug(
                "Session %d sample %d: %s confidence=%s streak=%d",
                session_id,
                session.samples_taken,
                session.last_verdict.value,
                f"{session.last_confidence:.3f}" if session.last_confidence is not None else "none",
                session.consecutive_high_confidence,
            )
            events.append(
                SessionUpdate(
                    session_id=session_id,
                    phase=Phase.SAMPLING,
                    confidence=session.last_confidence,
                    consecutive_count=session.consecutive_high_confidence,
                )
            )

            if session.consecutive_high_confidence >= self.required_consecutive:
                self._cancel_timers()
                self._phase = Phase.CONFIRMING
                LOGGER.info(
                    "Session %d confirmed %s - %s (similarity %.3f)",
                    session_id,
                    candidate.entry.artist,
                    candidate.entry.title,
                    candidate.similarity,
                )
                events.append(
                    SessionUpdate(
                        session_id=session_id,
                        phase=Phase.CONFIRMING,
                        confidence=candidate.similarity,
                        consecutive_count=session.consecutive_high_confidence,
                    )
                )
                events.append(RecognitionOutcome(kind="confirmed", session_id=session_id, candidate=candidate))
                self._reset_to_idle()
                events.append(SessionUpdate(session_id=session_id, phase=Phase.IDLE))
        self._dispatch(events)

    # ----------------------------------------------------------- escalation

    def _on_deadline(self, session_id: int) -> None:
        events: List[_Event] = []
        with self._lock:
            if not self._is_current(session_id, Phase.SAMPLING):
                return
            self._deadline_handle = None
            self._cancel_timers()
            self._phase = Phase.ESCALATING
            frame = self._session.last_frame
            LOGGER.info(
                "Session %d reached %.1fs without confirmation; escalating (%s frame)",
                session_id,
                self.escalation_timeout,
                "cached" if frame is not None else "fresh",
            )
            events.append(SessionUpdate(session_id=session_id, phase=Phase.ESCALATING))
        self._dispatch(events)
        self._submit(self._run_escalation, session_id, frame)

    def _run_escalation(self, session_id: int, frame: Optional[bytes]) -> None:
        try:
            image = frame if frame is not None else self.frame_source.capture()
        except Exception as exc:
            self._fail(session_id, Phase.ESCALATING, exc)
            return

        try:
            result = self.secondary.identify(image) or SecondaryResult()
        except Exception as exc:
            LOGGER.warning("Session %d secondary recognizer failed: %s", session_id, exc)
            result = SecondaryResult(error=str(exc))

        matches: List[CatalogEntry] = []
        if result.identified and self.store is not None:
            matches = self.store.search(result.artist, result.title)
        self._on_escalated(session_id, result, matches)

    def _on_escalated(self, session_id: int, result: SecondaryResult, matches: List[CatalogEntry]) -> None:
        events: List[_Event] = []
        with self._lock:
            if not self._is_current(session_id, Phase.ESCALATING):
                LOGGER.debug("Session %d escalation result discarded (stale)", session_id)
                return
            if result.identified:
                LOGGER.info(
                    "Session %d secondary recognizer: %s - %s (%d catalog matches)",
                    session_id,
                    result.artist,
                    result.title,
                    len(matches),
                )
            else:
                LOGGER.info("Session %d secondary recognizer found nothing", session_id)
            events.append(
                RecognitionOutcome(
                    kind="escalated",
                    session_id=session_id,
                    secondary=result,
                    catalog_matches=list(matches),
                )
            )
            self._reset_to_idle()
            events.append(SessionUpdate(session_id=session_id, phase=Phase.IDLE))
        self._dispatch(events)

    def _fail(self, session_id: int, phase: Phase, exc: BaseException) -> None:
        """Abort the session, unless it already left the phase that issued the failing job."""
        events: List[_Event] = []
        with self._lock:
            if phase is Phase.SAMPLING and self._in_flight_session == session_id:
                self._in_flight_session = None
            if not self._is_current(session_id, phase):
                LOGGER.debug("Session %d %s failure discarded (stale): %s", session_id, phase.value, exc)
                return
            LOGGER.error("Session %d aborted: %s", session_id, exc)
            self.last_error = exc
            self._reset_to_idle()
            events.append(SessionUpdate(session_id=session_id, phase=Phase.IDLE))
        self._dispatch(events)
        if self.on_error is not None:
            try:
                self.on_error(exc)
            except Exception:
                LOGGER.exception("Session %d error callback failed", session_id)


def _log_job_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOGGER.error("Recognition job failed", exc_info=(type(exc), exc, exc.__traceback__))
