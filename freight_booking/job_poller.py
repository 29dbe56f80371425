"""
Job Poller — Polls long-running jobs to a terminal state and chains the
scrape job after a successful import.

Each polled job runs on its own daemon thread:

    attempt = 1
    loop:
        status = job_client.get_status(kind, job_id)
        report status
        if status is succeeded/failed: stop          (no further polls)
        if attempt == max_attempts:    stop, report timeout
        wait interval (or return immediately when stopped)

Chaining:
    When an import job succeeds and a ScrapeConfig was registered for it with
    chain_scrape(), exactly one scrape job is submitted and polled. A
    per-job "chained" flag, set under a lock before the submission, makes the
    chain fire at most once no matter how many polls observe the terminal
    status. A failed scrape submission is reported through on_chain_error and
    never touches the import job.

Teardown:
    stop_all() sets every stop event under the lock, so no poll loop outlives
    the view or command that started it. A scrape submission still in flight
    when stop_all() runs is reported through on_chain_started but never gets
    a poll loop. Poll errors (the status endpoint failing or answering
    garbage) end the loop and are reported through on_error; retrying is up
    to the caller. prune() forgets finished jobs.

One job is never polled twice at once: poll_once() on a job whose loop is
running, or whose status request is already in flight, returns the last
status without polling.
"""

import threading
from typing import Callable, Dict, List, Optional

from .errors import user_message
from .models import JobStatus, ScrapeConfig


DEFAULT_INTERVAL = 2.0
DEFAULT_MAX_ATTEMPTS = 900


class _PollHandle:
    def __init__(self, job_id: str, kind: str):
        self.job_id = job_id
        self.kind = kind
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self.attempts = 0
        self.last_status: Optional[JobStatus] = None
        self.terminal = False
        self.in_flight = False
        self.chained = False
        self.chained_job_id: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class JobPoller:
    """Polls import and scrape jobs.

    Attributes:
        job_client: Object with get_status(kind, job_id) and submit_scrape(config).
        interval: Seconds between polls.
        max_attempts: Poll ceiling per job (0 = unbounded).
        on_status: Called with every JobStatus received.
        on_terminal: Called once with the succeeded/failed JobStatus.
        on_chain_started: Called with (import_job_id, scrape_job_id).
        on_chain_error: Called with (import_job_id, exception) if the scrape submission fails.
        on_error: Called with (job_id, exception) if a poll fails.
        on_timeout: Called with job_id when max_attempts is reached.
    """

    def __init__(
        self,
        job_client,
        interval: float = DEFAULT_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        on_status: Optional[Callable[[JobStatus], None]] = None,
        on_terminal: Optional[Callable[[JobStatus], None]] = None,
        on_chain_started: Optional[Callable[[str, str], None]] = None,
        on_chain_error: Optional[Callable[[str, Exception], None]] = None,
        on_error: Optional[Callable[[str, Exception], None]] = None,
        on_timeout: Optional[Callable[[str], None]] = None,
        debug: bool = False,
    ):
        self.job_client = job_client
        self.interval = interval
        self.max_attempts = max_attempts
        self.on_status = on_status
        self.on_terminal = on_terminal
        self.on_chain_started = on_chain_started
        self.on_chain_error = on_chain_error
        self.on_error = on_error
        self.on_timeout = on_timeout
        self.debug = debug
        self._handles: Dict[str, _PollHandle] = {}
        self._chain_configs: Dict[str, ScrapeConfig] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def chain_scrape(self, import_job_id: str, config: ScrapeConfig) -> None:
        """Register the scrape job to submit once import_job_id succeeds."""
        with self._lock:
            self._chain_configs[str(import_job_id)] = config

    def start(self, job_id: str, kind: str) -> bool:
        """Start polling job_id on a background thread.

        Returns:
            False if the job is already being polled or already reached a
            terminal state, True if a new poll loop was started.
        """
        with self._lock:
            return self._start_locked(str(job_id), kind)

    def poll_once(self, job_id: str, kind: Optional[str] = None) -> Optional[JobStatus]:
        """Run one poll cycle for job_id synchronously.

        A job that already reached a terminal state, or that a background
        loop is polling, is not polled here; its last status is returned.
        """
        job_id = str(job_id)
        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None:
                if kind is None:
                    raise ValueError(f"Unknown job {job_id}; pass its kind")
                handle = _PollHandle(job_id, kind)
                self._handles[job_id] = handle
            elif handle.running:
                return handle.last_status
        return self._poll(handle)

    def stop(self, job_id: str) -> None:
        with self._lock:
            handle = self._handles.get(str(job_id))
            if handle is not None:
                handle.stop_event.set()

    def stop_all(self) -> None:
        """Release every poll loop, terminal or not."""
        with self._lock:
            handles = list(self._handles.values())
            for handle in handles:
                handle.stop_event.set()
        if self.debug and handles:
            print(f"  Stopped {len(handles)} poll loop(s)")

    def prune(self) -> List[str]:
        """Forget jobs whose loop has finished.

        A job is finished once it reached a terminal state or was stopped and
        nothing is polling it. Its chain registration goes with it.

        Returns:
            The pruned job ids.
        """
        with self._lock:
            finished = [
                job_id for job_id, handle in self._handles.items()
                if not handle.running and not handle.in_flight
                and (handle.terminal or handle.stop_event.is_set())
            ]
            for job_id in finished:
                del self._handles[job_id]
                self._chain_configs.pop(job_id, None)
        if self.debug and finished:
            print(f"  Pruned {len(finished)} finished job(s)")
        return finished

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for every poll loop, including chained ones, to finish.

        Returns:
            True if nothing is polling any more.
        """
        while True:
            with self._lock:
                threads = [h.thread for h in self._handles.values() if h.running]
            if not threads:
                return True
            for thread in threads:
                thread.join(timeout)
                if thread.is_alive():
                    return False

    def is_polling(self, job_id: str) -> bool:
        handle = self._handles.get(str(job_id))
        return handle is not None and handle.running

    def status(self, job_id: str) -> Optional[JobStatus]:
        handle = self._handles.get(str(job_id))
        return handle.last_status if handle else None

    def chained_job(self, import_job_id: str) -> Optional[str]:
        """Scrape job id submitted after import_job_id succeeded, if any."""
        handle = self._handles.get(str(import_job_id))
        return handle.chained_job_id if handle else None

    def jobs(self) -> List[str]:
        with self._lock:
            return list(self._handles.keys())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start_locked(self, job_id: str, kind: str) -> bool:
        handle = self._handles.get(job_id)
        if handle is not None and (handle.running or handle.terminal):
            return False
        if handle is None:
            handle = _PollHandle(job_id, kind)
            self._handles[job_id] = handle
        handle.stop_event.clear()
        handle.thread = threading.Thread(
            target=self._run, args=(handle,), name=f"poll-{kind}-{job_id}", daemon=True
        )
        handle.thread.start()

        if self.debug:
            print(f"  Polling {kind} job {job_id} every {self.interval}s")
        return True

    def _run(self, handle: _PollHandle) -> None:
        while not handle.stop_event.is_set():
            try:
                self._poll(handle)
            except Exception as e:
                if self.on_error:
                    self.on_error(handle.job_id, e)
                else:
                    print(f"  Warning: polling {handle.kind} job {handle.job_id} failed: {user_message(e)}")
                return

            if handle.terminal:
                return

            if self.max_attempts and handle.attempts >= self.max_attempts:
                if self.on_timeout:
                    self.on_timeout(handle.job_id)
                else:
                    print(f"  Warning: gave up on {handle.kind} job {handle.job_id} after {handle.attempts} polls")
                return

            if handle.stop_event.wait(self.interval):
                return

    def _poll(self, handle: _PollHandle) -> Optional[JobStatus]:
        with self._lock:
            if handle.terminal or handle.in_flight:
                return handle.last_status
            handle.in_flight = True
            handle.attempts += 1

        try:
            status = self.job_client.get_status(handle.kind, handle.job_id)
            with self._lock:
                if status is not None:
                    handle.last_status = status
                    handle.terminal = status.is_terminal
        finally:
            with self._lock:
                handle.in_flight = False

        if status is None:
            if self.debug:
                print(f"  {handle.kind} job {handle.job_id} not listed yet (poll {handle.attempts})")
            return None

        if self.on_status:
            self.on_status(status)

        if status.is_terminal:
            if self.on_terminal:
                self.on_terminal(status)
            if handle.kind == "import" and status.state == "succeeded":
                self._chain(handle)

        return status

    def _chain(self, handle: _PollHandle) -> None:
        with self._lock:
            config = self._chain_configs.get(handle.job_id)
            if config is None or handle.chained:
                return
            handle.chained = True

        try:
            scrape_job_id = str(self.job_client.submit_scrape(config))
        except Exception as e:
            if self.on_chain_error:
                self.on_chain_error(handle.job_id, e)
            else:
                print(f"  Warning: could not start BOL scraping after import {handle.job_id}: {user_message(e)}")
            return

        with self._lock:
            handle.chained_job_id = scrape_job_id
            stopped = handle.stop_event.is_set()
            if not stopped:
                self._start_locked(scrape_job_id, "scrape")

        if stopped and self.debug:
            print(f"  Scrape job {scrape_job_id} submitted after teardown; not polling it")
        if self.on_chain_started:
            self.on_chain_started(handle.job_id, scrape_job_id)
