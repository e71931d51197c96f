"""Running healthchecks on a schedule and reporting their state to the engine."""

from __future__ import annotations

import abc
import dataclasses
import enum
import logging
import math
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .core import Config, Notification, Result, State, Status, complete

log = logging.getLogger(__name__)

_POLL = 0.1
_STAGGER_PERIOD = 0.05
_FETCH_RETRY_DELAY = 5.0


class _Event(enum.Enum):
    QUIT = enum.auto()
    UPDATE = enum.auto()
    TICK = enum.auto()


def _next_tick(tick: float, interval: float, now: float) -> float:
    """Advance a ticker deadline, keeping at most one overdue tick."""
    tick += interval
    while tick + interval <= now:
        tick += interval
    return tick


def _check_interval(interval: float) -> None:
    if interval <= 0:
        raise ValueError(f"non-positive interval {interval!r}")


class Check:
    """A healthcheck instance that runs its checker at a regular interval."""

    def __init__(self, notify: "queue.Queue[Notification]") -> None:
        self.config: Optional[Config] = None
        self._notify_queue = notify
        self._lock = threading.Lock()
        self._cond = threading.Condition()
        self._pending: Optional[Config] = None
        self._quit = False
        self._blocking = False
        self._dryrun = False
        self._last_check: Optional[float] = None
        self._failed = 0
        self._failures = 0
        self._successes = 0
        self._state = State.UNKNOWN
        self._result: Optional[Result] = None

    def __str__(self) -> str:
        if self.config is None or self.config.checker is None:
            return "<unconfigured>"
        return str(self.config.checker)

    @property
    def _id(self) -> int:
        return self.config.id if self.config is not None else 0

    def status(self) -> Status:
        """Return the current status of this healthcheck."""
        with self._lock:
            status = Status(
                last_check=self._last_check,
                failures=self._failures,
                successes=self._successes,
                state=self._state,
            )
            if self._result is not None:
                status.duration = self._result.duration
                status.message = str(self._result)
        return status

    def _wait(self, deadline: Optional[float]) -> Tuple[_Event, Optional[Config]]:
        with self._cond:
            while True:
                if self._quit:
                    self._quit = False
                    return _Event.QUIT, None
                if self._pending is not None:
                    config, self._pending = self._pending, None
                    self._cond.notify_all()
                    return _Event.UPDATE, config
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return _Event.TICK, None
                self._cond.wait(remaining)

    def run(self, start: Optional[Callable[[], None]] = None) -> None:
        """Run the healthcheck until stopped.

        Waits for an initial configuration, then checks at the configured
        interval. *start*, if given, is called before the first check and
        whenever the interval changes, to stagger checks.
        """
        event, config = self._wait(None)
        if event is _Event.QUIT:
            return
        _check_interval(config.interval)
        self.config = config

        if start is not None:
            start()
        log.info("Starting healthchecker for %d (%s)", self._id, self)

        tick = time.monotonic() + config.interval
        self.healthcheck()
        while True:
            event, config = self._wait(tick)
            if event is _Event.QUIT:
                log.info("Stopping healthchecker for %d (%s)", self._id, self)
                return
            if event is _Event.UPDATE:
                if config.interval != self.config.interval:
                    _check_interval(config.interval)
                    if start is not None:
                        start()
                    tick = time.monotonic() + config.interval
                self.config = config
                continue
            self.healthcheck()
            tick = _next_tick(tick, self.config.interval, time.monotonic())

    def healthcheck(self) -> None:
        """Run the checker once and record the outcome."""
        config = self.config
        if config is None or config.checker is None:
            return
        start = time.monotonic()
        wall = time.time()

        if self._dryrun:
            result = complete(start, "dryrun mode; always succeed", True, None)
        else:
            result = self._execute(config)

        outcome = "SUCCESS" if result.success else "FAILURE"
        log.info("%d: (%s) %s: %s", config.id, self, outcome, result)

        with self._lock:
            self._last_check = wall
            self._result = result
            if result.success:
                state = State.HEALTHY
                self._failed = 0
                self._successes += 1
            else:
                self._failed += 1
                self._failures += 1
                state = State.UNHEALTHY
            if self._state is State.HEALTHY and 0 < self._failed <= config.retries:
                log.info("%d: Failure %d - retrying...", config.id, self._failed)
                state = State.HEALTHY
            transition = self._state is not state
            self._state = state

        if transition:
            self.notify()

    def _execute(self, config: Config) -> Result:
        checker = config.checker
        timeout = config.timeout
        results: "queue.Queue[Result]" = queue.Queue(maxsize=1)

        def target() -> None:
            start = time.monotonic()
            try:
                result = checker.check(timeout)
            except Exception as exc:
                result = complete(start, "", False, exc)
            results.put(result)

        threading.Thread(target=target, name=f"healthcheck-{config.id}", daemon=True).start()
        try:
            return results.get(timeout=max(timeout, 0))
        except queue.Empty:
            return Result("Timed out", False, timeout, None)

    def notify(self) -> None:
        """Send a notification carrying the current status."""
        self._notify_queue.put(Notification(self._id, self.status()))

    def stop(self) -> None:
        """Ask a running healthcheck to stop."""
        with self._cond:
            self._quit = True
            self._cond.notify_all()

    def set_blocking(self, block: bool) -> None:
        """Choose whether update waits until the configuration is taken."""
        with self._cond:
            self._blocking = block
            self._pending = None
            self._cond.notify_all()

    def set_dryrun(self, dryrun: bool) -> None:
        """Enable or disable dry-run mode, in which every check succeeds."""
        self._dryrun = dryrun

    def update(self, config: Config) -> None:
        """Queue a new configuration for the running healthcheck."""
        config = dataclasses.replace(config)
        with self._cond:
            if self._blocking:
                self._cond.wait_for(lambda: self._pending is None)
                self._pending = config
                self._cond.notify_all()
                self._cond.wait_for(lambda: self._pending is not config)
                return
            if self._pending is not None:
                log.warning("Unable to update %d (%s), last update still queued",
                            self._id, self)
                return
            self._pending = config
            self._cond.notify_all()


class Engine(abc.ABC):
    """The service that supplies healthcheck configurations and takes their state."""

    @abc.abstractmethod
    def healthchecks(self) -> Dict[int, Config]:
        """Return the current healthcheck configurations keyed by id."""

    @abc.abstractmethod
    def health_state(self, notifications: List[Notification]) -> None:
        """Deliver a batch of notifications; raise on failure."""


@dataclass
class ServerConfig:
    """Configuration for a healthcheck server. Durations are in seconds."""

    batch_delay: float = 0.1
    batch_size: int = 100
    channel_size: int = 1000
    max_failures: int = 10
    notify_interval: float = 15.0
    fetch_interval: float = 15.0
    retry_delay: float = 2.0
    dry_run: bool = False


def default_server_config() -> ServerConfig:
    """Return the default server configuration."""
    return ServerConfig()


class _Stagger:
    """A shared ticker: each caller waits for its own, later tick."""

    def __init__(self, period: float) -> None:
        self._period = period
        self._origin = time.monotonic()
        self._next_free = self._origin
        self._lock = threading.Lock()

    def __call__(self) -> None:
        with self._lock:
            now = time.monotonic()
            due = self._origin + (math.floor((now - self._origin) / self._period) + 1) * self._period
            slot = max(due, self._next_free)
            self._next_free = slot + self._period
        delay = slot - time.monotonic()
        if delay > 0:
            time.sleep(delay)


class Server:
    """Runs healthchecks fetched from an engine and reports their state back."""

    def __init__(self, engine: Engine, config: Optional[ServerConfig] = None) -> None:
        self._engine = engine
        self._config = config if config is not None else default_server_config()
        self._healthchecks: Dict[int, Check] = {}
        self._notify: "queue.Queue[Notification]" = queue.Queue(maxsize=self._config.channel_size)
        self._configs: "queue.Queue[Dict[int, Config]]" = queue.Queue(maxsize=1)
        self._batch: List[Notification] = []
        self._quit = threading.Event()
        self._error: Optional[BaseException] = None

    def shutdown(self) -> None:
        """Ask the server to stop."""
        self._quit.set()

    def run(self) -> None:
        """Run the server until shut down.

        Raises RuntimeError if notifications could not be delivered.
        """
        for worker in (self._updater, self._notifier, self._manager):
            threading.Thread(target=worker, name=worker.__name__, daemon=True).start()
        self._quit.wait()
        if self._error is not None:
            raise self._error

    def _put(self, target: queue.Queue, item) -> bool:
        while not self._quit.is_set():
            try:
                target.put(item, timeout=_POLL)
                return True
            except queue.Full:
                continue
        return False

    def _updater(self) -> None:
        while not self._quit.is_set():
            log.info("Getting healthchecks from engine...")
            try:
                configs = self._engine.healthchecks()
            except Exception as err:
                log.error("Engine healthchecks failed: %s", err)
                delay = _FETCH_RETRY_DELAY
            else:
                log.info("Engine returned %d healthchecks", len(configs))
                if not self._put(self._configs, configs):
                    return
                delay = self._config.fetch_interval
            self._quit.wait(delay)

    def _manager(self) -> None:
        stagger = _Stagger(_STAGGER_PERIOD)
        interval = self._config.notify_interval
        next_notify = time.monotonic() + interval
        try:
            while not self._quit.is_set():
                wait = min(_POLL, max(0.0, next_notify - time.monotonic()))
                try:
                    configs = self._configs.get(timeout=wait)
                except queue.Empty:
                    now = time.monotonic()
                    if now >= next_notify:
                        for hc in list(self._healthchecks.values()):
                            hc.notify()
                        while next_notify <= now:
                            next_notify += interval
                    continue
                self._apply(configs, stagger)
        finally:
            for hc in self._healthchecks.values():
                hc.stop()

    def _apply(self, configs: Dict[int, Config], stagger: _Stagger) -> None:
        configs = {hc_id: cfg for hc_id, cfg in configs.items() if cfg is not None}

        for hc_id in [i for i in self._healthchecks if i not in configs]:
            self._healthchecks.pop(hc_id).stop()

        for hc_id in configs:
            if hc_id not in self._healthchecks:
                hc = Check(self._notify)
                hc.set_dryrun(self._config.dry_run)
                self._healthchecks[hc_id] = hc
                threading.Thread(target=hc.run, args=(stagger,),
                                 name=f"check-{hc_id}", daemon=True).start()

        for hc_id, hc in self._healthchecks.items():
            hc.update(configs[hc_id])

    def _notifier(self) -> None:
        deadline: Optional[float] = None
        try:
            while not self._quit.is_set():
                if deadline is None:
                    wait = _POLL
                else:
                    wait = max(0.0, min(_POLL, deadline - time.monotonic()))
                try:
                    notification = self._notify.get(timeout=wait)
                except queue.Empty:
                    if deadline is not None and time.monotonic() >= deadline:
                        deadline = None
                        self._send()
                    continue
                self._batch.append(notification)
                if len(self._batch) == 1:
                    deadline = time.monotonic() + self._config.batch_delay
                elif len(self._batch) == self._config.batch_size:
                    self._send()
                    deadline = None
        except RuntimeError as err:
            log.critical("%s", err)
            self._error = err
            self._quit.set()

    def _send(self) -> None:
        failures = 0
        while True:
            try:
                self._engine.health_state(list(self._batch))
                break
            except Exception as err:
                failures += 1
                log.error("Send failed %d times: %s", failures, err)
                if failures >= self._config.max_failures:
                    raise RuntimeError(f"send: {failures} errors, giving up") from err
                time.sleep(self._config.retry_delay)
        self._batch.clear()