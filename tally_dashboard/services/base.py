"""
Shared read policy for the domain services.

Every read goes the same way:
1. Cache hit: return it and schedule prefetch of the neighbouring pages.
2. Miss: join a fetch already running for the same fingerprint, or fetch
   through serializer, transport and parser; store; prefetch.
3. Failure: answer with the last cached value marked stale, carrying the
   error message. With nothing cached, the error propagates.
"""
from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, Optional, TypeVar
from loguru import logger
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from ..cache import InFlightRegistry, RequestFingerprint, TTLCache
from ..client import TallyTransport
from ..config import ConfigResolver, DashboardSettings
from ..errors import NetworkUnreachable, ParseError, RequestTimeout, TransportError
from ..models import PaginatedResult, ServiceResult

T = TypeVar("T")

# Errors a degraded (stale) answer may stand in for
RECOVERABLE_ERRORS = (TransportError, ParseError)


def paginate(
    records: list,
    page: int,
    page_size: int,
    total: Optional[int] = None,
) -> PaginatedResult:
    """
    Wrap one page of records.

    Without a known total the count is estimated from the page itself: a
    short page is the last one, a full page implies at least one more. A
    known total is raised to what the page proves exists, never lowered.
    A full page means more may follow unless the known total is reached.
    """
    observed = (page - 1) * page_size + len(records)
    full = len(records) == page_size
    if total is None:
        total = page * page_size if full else observed
        estimate = True
    else:
        total = max(total, observed)
        estimate = False
    return PaginatedResult(
        records=records,
        page=page,
        page_size=page_size,
        total_count=total,
        has_more=full and (estimate or page * page_size < total),
        total_is_estimate=estimate,
    )


def adjacent_pages(result: PaginatedResult) -> list[int]:
    """Pages worth prefetching around result: page-1, page+1, page+2."""
    last = result.total_pages
    if result.has_more and result.total_is_estimate:
        last = max(last, result.page + 2)
    return [
        p for p in (result.page - 1, result.page + 1, result.page + 2)
        if 1 <= p <= last and p != result.page
    ]


def _release_if_cancelled(job: Future, future: Future) -> None:
    # A job cancelled before it ran (executor shutdown) leaves its registry future pending
    if job.cancelled() and not future.done():
        future.set_result(None)


class BaseService:
    """
    Base class for the domain services.

    Services share one transport, cache, in-flight registry and prefetch
    executor, all owned by the composition root.
    """

    def __init__(
        self,
        transport: TallyTransport,
        resolver: ConfigResolver,
        cache: TTLCache,
        in_flight: InFlightRegistry,
        settings: Optional[DashboardSettings] = None,
        prefetcher: Optional[ThreadPoolExecutor] = None,
    ):
        self.transport = transport
        self.resolver = resolver
        self.cache = cache
        self.in_flight = in_flight
        self.settings = settings or resolver.settings
        self.prefetcher = prefetcher

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(1, self.settings.retry_attempts)),
            wait=wait_fixed(self.settings.retry_delay),
            retry=retry_if_exception_type((NetworkUnreachable, RequestTimeout)),
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying Tally request (attempt {retry_state.attempt_number})..."
            ),
            reraise=True,
        )

    def _fetch(self, fetch: Callable[[], T]) -> T:
        return self._retrying()(fetch)

    def _join_or_fetch(self, fp: RequestFingerprint, fetch: Callable[[], T]) -> T:
        future: Future = Future()
        running = self.in_flight.register_in_flight(fp, future)
        if running is not future:
            logger.debug(f"Joining in-flight fetch for {fp}")
            value = running.result()
            if value is not None:
                return value
            # The prefetch we joined failed; its error was already logged
            return self._fetch(fetch)

        future.set_running_or_notify_cancel()
        try:
            value = self._fetch(fetch)
        except BaseException as e:
            future.set_exception(e)
            raise
        future.set_result(value)
        return value

    def _load(
        self,
        fp: RequestFingerprint,
        fetch: Callable[[], T],
        ttl: Optional[float] = None,
        force_refresh: bool = False,
        prefetch: Optional[Callable[[T], None]] = None,
    ) -> ServiceResult[T]:
        """
        Run the read policy for one fingerprint.

        force_refresh skips the cache read but keeps the cached entry, so it
        can still serve as the stale answer if the refresh fails.
        """
        if not force_refresh:
            cached = self.cache.get(fp)
            if cached is not None:
                logger.debug(f"Cache hit for {fp}")
                if prefetch:
                    prefetch(cached)
                return ServiceResult(data=cached, from_cache=True)

        try:
            value = self._join_or_fetch(fp, fetch)
        except RECOVERABLE_ERRORS as e:
            stale = self.cache.get_stale(fp)
            if stale is None:
                raise
            logger.warning(f"Serving stale data for {fp}: {e.message}")
            return ServiceResult(data=stale, error=e.message, from_cache=True, stale=True)

        if value is not None:
            self.cache.set(fp, value, ttl)
        if prefetch and value is not None:
            prefetch(value)
        return ServiceResult(data=value)

    # ------------------------------------------------------------------
    # Prefetch
    # ------------------------------------------------------------------

    def _schedule_prefetch(
        self,
        targets: Iterable[tuple[RequestFingerprint, Callable[[], object]]],
        ttl: Optional[float] = None,
    ) -> int:
        """
        Queue background fetches for fingerprints not cached or running.

        Returns the number scheduled. Never blocks the caller.
        """
        if self.prefetcher is None or not self.settings.prefetch:
            return 0

        scheduled = 0
        for fp, fetch in targets:
            if self.cache.has(fp):
                continue
            future: Future = Future()
            if self.in_flight.register_in_flight(fp, future) is not future:
                continue
            try:
                job = self.prefetcher.submit(self._run_prefetch, fp, fetch, ttl, future)
            except RuntimeError:
                # Executor already shut down
                future.set_running_or_notify_cancel()
                future.set_result(None)
                continue
            job.add_done_callback(lambda job, future=future: _release_if_cancelled(job, future))
            scheduled += 1
        if scheduled:
            logger.debug(f"Scheduled {scheduled} prefetches")
        return scheduled

    def _run_prefetch(self, fp, fetch, ttl, future: Future) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            value = self._fetch(fetch)
        except Exception as e:
            logger.warning(f"Prefetch failed for {fp}: {e}")
            future.set_result(None)
            return
        self.cache.set(fp, value, ttl)
        future.set_result(value)
