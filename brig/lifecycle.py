"""
LifecycleCoordinator - request/acknowledge protocol between the
orchestrator and the hook handler.

Two bounded queues connect the parties:
- events: LifecyclePhase values (orchestrator -> handler)
- acks:   booleans, one per phase (handler -> orchestrator)

Protocol:
1. send(phase) puts the phase on the events queue and blocks for its ack
2. The handler receives the phase, does the phase's work, and acknowledges
   exactly once (True on success, False on any error)
3. A False ack raises LifecycleHandlerFailed in the sender; the handler
   stops after a False ack and any later send() fails immediately
4. When the waitFor phase succeeds the handler spawns the attach task,
   which sends postAttach itself once the terminal is wired up
5. finish() closes the events queue exactly once; on success it first
   waits for the attach task, on failure it closes immediately

Senders are serialized by a lock, so phases are never pipelined: every
phase gets its ack before the next phase is put on the queue.
"""

import logging
import queue
import threading
from enum import Enum
from typing import Callable, Optional

from brig.errors import LifecycleHandlerFailed
from brig.runtime import Runtime
from brig.schemas import LifecyclePhase

logger = logging.getLogger(__name__)

_CLOSED = object()
_ACK_POLL = 0.1


class CoordinatorState(str, Enum):
    """Where the coordinator is in the current request/ack exchange."""
    IDLE = "idle"
    SENT = "sent"
    AWAITING_ACK = "awaiting_ack"
    ACKED = "acked"
    CLOSED = "closed"


class LifecycleCoordinator:
    """
    One coordinator per provisioning session, shared by the orchestrator,
    the handler and the attach task.

    Usage:
        coordinator = LifecycleCoordinator()
        handler = LifecycleHandler(coordinator, run_phase, wait_for, attach)
        thread = handler.start()
        try:
            coordinator.send(LifecyclePhase.INITIALIZE)
            ...
            coordinator.finish(success=True)
        except BrigError:
            coordinator.finish(success=False)
            raise
    """

    def __init__(self):
        self._events: queue.Queue = queue.Queue(maxsize=1)
        self._acks: queue.Queue = queue.Queue(maxsize=1)
        self._send_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = CoordinatorState.IDLE
        self._closed = threading.Event()
        self._handler_exited = threading.Event()
        self._aborted = threading.Event()
        self._tasks: list[threading.Thread] = []
        self._task_errors: list[BaseException] = []
        self.close_count = 0
        self.history: list[tuple[LifecyclePhase, bool]] = []

    @property
    def state(self) -> CoordinatorState:
        with self._state_lock:
            return self._state

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def aborted(self) -> threading.Event:
        """Set when the session is failing; background tasks should stop waiting."""
        return self._aborted

    def _set_state(self, state: CoordinatorState) -> None:
        with self._state_lock:
            if self._state is not CoordinatorState.CLOSED:
                self._state = state

    # -------------------------------------------------------------------------
    # Orchestrator side
    # -------------------------------------------------------------------------

    def send(self, phase: LifecyclePhase) -> None:
        """
        Send a phase and block until the handler acknowledges it.

        Raises:
            LifecycleHandlerFailed: If the handler acknowledged False, has
                already stopped, or the coordinator is closed
        """
        with self._send_lock:
            if self._closed.is_set() or self._handler_exited.is_set():
                raise LifecycleHandlerFailed(phase.value)

            logger.debug(f"lifecycle: sending {phase.value}")
            self._set_state(CoordinatorState.SENT)
            self._events.put(phase)
            self._set_state(CoordinatorState.AWAITING_ACK)

            ok = self._wait_for_ack(phase)
            self._set_state(CoordinatorState.ACKED)
            self.history.append((phase, ok))
            self._set_state(CoordinatorState.IDLE)

            if not ok:
                raise LifecycleHandlerFailed(phase.value)

    def _wait_for_ack(self, phase: LifecyclePhase) -> bool:
        while True:
            try:
                return self._acks.get(timeout=_ACK_POLL)
            except queue.Empty:
                if self._handler_exited.is_set() and self._acks.empty():
                    logger.error(f"lifecycle: handler stopped without acknowledging {phase.value}")
                    return False

    def spawn(self, target: Callable[[], None], name: str = "brig-attach") -> threading.Thread:
        """Run target on a background thread that finish() waits for."""

        def run():
            try:
                target()
            except Exception as e:
                logger.error(f"Background task {name} failed: {e}")
                self._task_errors.append(e)

        thread = threading.Thread(target=run, name=name, daemon=True)
        self._tasks.append(thread)
        thread.start()
        return thread

    def close(self) -> None:
        """Close the events queue. Only the first call has any effect."""
        with self._state_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._state = CoordinatorState.CLOSED
            self.close_count += 1

        while True:
            try:
                self._events.put_nowait(_CLOSED)
                break
            except queue.Full:
                # An undelivered phase is dropped; nobody will wait for its ack
                try:
                    self._events.get_nowait()
                except queue.Empty:
                    pass
        logger.debug("lifecycle: event queue closed")

    def finish(self, success: bool) -> None:
        """
        End the session.

        On success, waits for every spawned task, closes, and re-raises the
        first task error. On failure, signals abort and closes immediately.
        """
        if not success:
            self._aborted.set()
            self.close()
            return

        for thread in list(self._tasks):
            thread.join()
        self.close()
        if self._task_errors:
            raise self._task_errors[0]

    # -------------------------------------------------------------------------
    # Handler side
    # -------------------------------------------------------------------------

    def receive(self) -> Optional[LifecyclePhase]:
        """Next phase, or None once the coordinator is closed."""
        item = self._events.get()
        if item is _CLOSED:
            # Leave the marker for any later receive()
            self._events.put_nowait(_CLOSED)
            return None
        return item

    def acknowledge(self, ok: bool) -> None:
        if not ok:
            self._handler_exited.set()
        self._acks.put(ok)

    def handler_stopped(self) -> None:
        self._handler_exited.set()


class LifecycleHandler:
    """
    Receives phases and runs their work.

    Args:
        coordinator: Shared coordinator
        run_phase: Does the work for one phase; raises on failure
        wait_for: Phase after which the attach task is spawned
        attach_task: Task that attaches the terminal (None = never attach)
    """

    def __init__(
        self,
        coordinator: LifecycleCoordinator,
        run_phase: Callable[[LifecyclePhase], None],
        wait_for: Optional[LifecyclePhase] = None,
        attach_task: Optional["AttachTask"] = None,
    ):
        self.coordinator = coordinator
        self.run_phase = run_phase
        self.wait_for = wait_for
        self.attach_task = attach_task
        self.failed_phase: Optional[LifecyclePhase] = None

    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self.run, name="brig-lifecycle", daemon=True)
        thread.start()
        return thread

    def run(self) -> bool:
        """
        Handler loop. Returns False if a phase failed.

        Exactly one acknowledgement is sent per received phase.
        """
        try:
            while True:
                phase = self.coordinator.receive()
                if phase is None:
                    logger.debug("lifecycle: handler exiting")
                    return True

                logger.debug(f"lifecycle: {phase.value}")
                try:
                    self.run_phase(phase)
                except Exception as e:
                    logger.error(f"Lifecycle phase {phase.value} failed: {e}")
                    self.failed_phase = phase
                    self.coordinator.acknowledge(False)
                    return False

                if phase == self.wait_for and self.attach_task is not None:
                    self.coordinator.spawn(self.attach_task.run)
                self.coordinator.acknowledge(True)
        finally:
            self.coordinator.handler_stopped()


class AttachTask:
    """
    Attaches the host terminal to the devcontainer.

    Waits until the devcontainer is running, attaches, sends postAttach
    through the coordinator, then blocks until the terminal session ends.
    """

    def __init__(self, runtime: Runtime, coordinator: LifecycleCoordinator):
        self.runtime = runtime
        self.coordinator = coordinator
        self._ready = threading.Event()
        self._container_id: Optional[str] = None

    def container_ready(self, container_id: str) -> None:
        self._container_id = container_id
        self._ready.set()

    def run(self) -> None:
        while not self._ready.wait(_ACK_POLL):
            if self.coordinator.aborted.is_set():
                logger.debug("Attach cancelled before the devcontainer started")
                return

        logger.debug(f"Attaching host terminal to {self._container_id}")
        session = self.runtime.attach_terminal(self._container_id)
        try:
            self.coordinator.send(LifecyclePhase.POST_ATTACH)
            session.wait()
        finally:
            session.close()
        logger.debug("Terminal session ended")
