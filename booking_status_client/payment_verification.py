import asyncio
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from booking_status_client.callbacks import maybe_await, notify
from booking_status_client.errors import (
    BookingStatusError,
    TransportError,
    UnknownSessionError,
    VerificationFailure,
    VerificationStopped,
    VerificationTimeout,
)
from booking_status_client.models import (
    ResourceCategory,
    VerificationConfig,
    VerificationItem,
    VerificationOutcome,
    VerificationResult,
    VerificationStatusSummary,
)
from loguru import logger
from yarl import URL

VerifyOperation = Callable[[ResourceCategory, str, Optional[str]], Any]
Sleep = Callable[[float], Awaitable[Any]]
PendingCallback = Optional[tuple]


def extract_payment_reference(url: str) -> Optional[str]:
    """Pull the gateway reference out of a payment redirect URL.

    Gateways send it back as either ``reference`` or ``trxref``.
    """
    try:
        query = URL(url).query
    except (TypeError, ValueError):
        return None
    return query.get("reference") or query.get("trxref") or None


def is_payment_redirect_url(url: str) -> bool:
    try:
        query = URL(url).query
    except (TypeError, ValueError):
        return False
    return "reference" in query or "trxref" in query


class VerificationRequest:
    def __init__(
        self,
        request_id: str,
        reference: str,
        category: ResourceCategory,
        resource_id: Optional[str],
        callbacks: dict,
        max_retries: int,
        retry_interval: float,
        timeout: float,
        overrides: Optional[dict] = None,
    ):
        self.id = request_id
        self.reference = reference
        self.category = category
        self.resource_id = resource_id
        self.callbacks = callbacks
        self.max_retries = max_retries
        self.retry_interval = retry_interval
        self.timeout = timeout
        self.overrides = overrides or {}
        self.attempt = 0
        self.outcome = VerificationOutcome.pending
        self.result: Optional[VerificationResult] = None
        self.error: Optional[BookingStatusError] = None
        self.started_at = datetime.now(timezone.utc)
        self.last_checked: Optional[datetime] = None
        self.lock = asyncio.Lock()
        self.task: Optional[asyncio.Task] = None
        self.deadline: Optional[asyncio.TimerHandle] = None
        self.callback_task: Optional[asyncio.Task] = None

    @property
    def is_verifying(self) -> bool:
        return self.outcome is VerificationOutcome.verifying

    def snapshot(self) -> VerificationItem:
        return VerificationItem(
            id=self.id,
            reference=self.reference,
            category=self.category,
            resource_id=self.resource_id,
            attempt=self.attempt,
            max_retries=self.max_retries,
            outcome=self.outcome,
            result=self.result,
            error=str(self.error) if self.error is not None else None,
            started_at=self.started_at,
            last_checked=self.last_checked,
        )


class VerificationController:
    """Confirms payment-gateway references with a bounded retry loop.

    Every request ends in exactly one of ``on_success``, ``on_failure`` or
    ``on_timeout``, unless the caller stops it first, in which case nothing
    fires. Each attempt calls the injected ``verify_operation`` with
    ``(category, reference, resource_id)``; its response is normalized
    through ``VerificationResult.from_payload``.
    """

    def __init__(
        self,
        verify_operation: VerifyOperation,
        config: Optional[VerificationConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.verify_operation = verify_operation
        self.config = config or VerificationConfig()
        self.logger = logger
        self._sleep = sleep
        self._requests: dict[str, VerificationRequest] = {}
        self._active_references: dict[str, str] = {}
        self._finished: "OrderedDict[str, VerificationRequest]" = OrderedDict()
        self._callback_tasks: set[asyncio.Task] = set()

    async def __aenter__(self) -> "VerificationController":
        return self

    async def __aexit__(self, *exc_info) -> None:
        tasks = [r.task for r in self._requests.values() if r.task is not None]
        self.stop_all_verifications()
        tasks.extend(self._callback_tasks)
        if tasks:
            await asyncio.wait(tasks)

    def start_verification(
        self,
        reference: str,
        category: Union[ResourceCategory, str],
        resource_id: Optional[str] = None,
        *,
        on_success: Optional[Callable[[VerificationResult], Any]] = None,
        on_failure: Optional[Callable[[VerificationFailure], Any]] = None,
        on_timeout: Optional[Callable[[], Any]] = None,
        max_retries: Optional[int] = None,
        retry_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> str:
        loop = asyncio.get_running_loop()
        overrides = {
            "max_retries": max_retries,
            "retry_interval": retry_interval,
            "timeout": timeout,
        }
        request = self._register(
            reference,
            category,
            resource_id,
            callbacks={
                "on_success": on_success,
                "on_failure": on_failure,
                "on_timeout": on_timeout,
            },
            overrides=overrides,
        )
        request.deadline = loop.call_later(request.timeout, self._expire, request)
        request.task = loop.create_task(self._run(request), name=f"verify-{request.id}")

        self.logger.info(
            f"Started payment verification for {request.category.value} {reference} "
            f"(id={request.id}, max_retries={request.max_retries}, timeout={request.timeout:.0f}s)"
        )
        return request.id

    def stop_verification(self, verification_id: str) -> None:
        request = self._requests.get(verification_id)
        if request is None or not request.is_verifying:
            return
        request.outcome = VerificationOutcome.stopped
        self._release(request)
        self.logger.info(f"Stopped payment verification {verification_id}")

    def stop_all_verifications(self) -> None:
        for verification_id in list(self._active_references.values()):
            self.stop_verification(verification_id)

    def retry_verification(self, target: str) -> str:
        """Restart a verification, found by id or by reference, from attempt zero"""
        request = self._find(target)
        if request is None:
            raise UnknownSessionError(f"No payment verification for {target!r}")

        self.stop_verification(request.id)
        return self.start_verification(
            request.reference,
            request.category,
            request.resource_id,
            **request.callbacks,
            **request.overrides,
        )

    async def verify_once(
        self,
        category: Union[ResourceCategory, str],
        reference: str,
        resource_id: Optional[str] = None,
        *,
        on_success: Optional[Callable[[VerificationResult], Any]] = None,
        on_failure: Optional[Callable[[VerificationFailure], Any]] = None,
        on_timeout: Optional[Callable[[], Any]] = None,
    ) -> VerificationResult:
        """Make exactly one verify call and return its normalized result.

        When a background verification is already running for the reference,
        the call joins it: it waits for any in-flight attempt and resolves that
        request instead of starting a second one. If that request ends while the
        call waits its turn, no call is made and the error that ended it is
        raised. Transport errors are raised.
        """
        active_id = self._active_references.get(reference)
        if active_id is not None:
            self.logger.debug(f"verify_once joining active verification {active_id}")
            return await self._attempt(self._requests[active_id])

        request = self._register(
            reference,
            category,
            resource_id,
            callbacks={
                "on_success": on_success,
                "on_failure": on_failure,
                "on_timeout": on_timeout,
            },
            overrides={},
            max_retries=1,
        )
        try:
            result = await self._attempt(request)
        except TransportError as exc:
            await self._fire(
                self._finish(
                    request,
                    VerificationOutcome.failure,
                    error=VerificationFailure(exc.message, reference=reference),
                )
            )
            raise
        await self._fire(self._timed_out(request))
        return result

    def handle_payment_redirect(
        self,
        url: str,
        category: Union[ResourceCategory, str],
        resource_id: Optional[str] = None,
        **options: Any,
    ) -> Optional[str]:
        reference = extract_payment_reference(url)
        if reference is None:
            self.logger.error(f"No payment reference found in redirect URL {url!r}")
            return None
        return self.start_verification(reference, category, resource_id, **options)

    def get_verification_item(self, verification_id: str) -> Optional[VerificationItem]:
        request = self._requests.get(verification_id) or self._finished.get(verification_id)
        return request.snapshot() if request is not None else None

    def is_verifying(self, verification_id: str) -> bool:
        request = self._requests.get(verification_id)
        return request is not None and request.is_verifying

    def get_verification_status(self) -> VerificationStatusSummary:
        return VerificationStatusSummary(
            active_verifications=len(self._active_references),
            verification_items=[
                self._requests[verification_id].snapshot()
                for verification_id in self._active_references.values()
            ],
        )

    async def wait(self, verification_id: str) -> Optional[VerificationResult]:
        """Wait for a verification to end.

        Returns the result on success and ``None`` if it was stopped. Raises
        ``VerificationFailure`` or ``VerificationTimeout`` otherwise.
        """
        request = self._requests.get(verification_id) or self._finished.get(verification_id)
        if request is None:
            raise UnknownSessionError(f"No payment verification {verification_id!r}")
        if request.task is not None and not request.task.done():
            await asyncio.wait({request.task})
        if request.callback_task is not None and not request.callback_task.done():
            await asyncio.wait({request.callback_task})

        if request.outcome is VerificationOutcome.success:
            return request.result
        if request.outcome in (VerificationOutcome.failure, VerificationOutcome.timeout):
            raise request.error
        return None

    def _register(
        self,
        reference: str,
        category: Union[ResourceCategory, str],
        resource_id: Optional[str],
        callbacks: dict,
        overrides: dict,
        max_retries: Optional[int] = None,
    ) -> VerificationRequest:
        category = ResourceCategory(category)
        if not reference:
            raise ValueError("A payment reference is required")
        if category.requires_resource_id and not resource_id:
            raise ValueError(f"{category.value} payment verification requires a resource id")
        _check_budget(overrides)

        existing = self._active_references.get(reference)
        if existing is not None:
            self.logger.info(f"Superseding payment verification {existing}")
            self.stop_verification(existing)

        request = VerificationRequest(
            request_id=f"{category.value}-{reference}-{uuid.uuid4().hex[:8]}",
            reference=reference,
            category=category,
            resource_id=resource_id,
            callbacks=callbacks,
            max_retries=_first_set(
                max_retries, overrides.get("max_retries"), self.config.max_retries
            ),
            retry_interval=_first_set(overrides.get("retry_interval"), self.config.retry_interval),
            timeout=_first_set(overrides.get("timeout"), self.config.timeout),
            overrides={k: v for k, v in overrides.items() if v is not None},
        )
        request.outcome = VerificationOutcome.verifying
        self._requests[request.id] = request
        self._active_references[reference] = request.id
        return request

    def _find(self, target: str) -> Optional[VerificationRequest]:
        request = self._requests.get(target) or self._finished.get(target)
        if request is not None:
            return request
        active_id = self._active_references.get(target)
        if active_id is not None:
            return self._requests[active_id]
        for request in reversed(self._finished.values()):
            if request.reference == target:
                return request
        return None

    def _release(self, request: VerificationRequest) -> None:
        if self._active_references.get(request.reference) == request.id:
            del self._active_references[request.reference]
        if request.deadline is not None:
            request.deadline.cancel()
        if request.task is not None and request.task is not asyncio.current_task():
            request.task.cancel()
        if self._requests.pop(request.id, None) is None:
            return

        self._finished[request.id] = request
        while len(self._finished) > self.config.max_finished_verifications:
            self._finished.popitem(last=False)

    def _finish(
        self,
        request: VerificationRequest,
        outcome: VerificationOutcome,
        *,
        result: Optional[VerificationResult] = None,
        error: Optional[BookingStatusError] = None,
    ) -> PendingCallback:
        """Move a request to its terminal outcome and return the callback to fire.

        Returns ``None`` when the request already left ``verifying``, which is
        what makes every terminal callback fire at most once.
        """
        if not request.is_verifying:
            return None

        request.outcome = outcome
        if result is not None:
            request.result = result
        request.error = error
        self._release(request)

        if outcome is VerificationOutcome.success:
            self.logger.info(f"Payment {request.reference} verified successfully")
            return request.callbacks["on_success"], (result,)
        if outcome is VerificationOutcome.failure:
            self.logger.error(f"Payment verification failed for {request.reference}: {error}")
            return request.callbacks["on_failure"], (error,)
        self.logger.warning(f"Payment verification timed out for {request.reference}: {error}")
        return request.callbacks["on_timeout"], ()

    def _timed_out(self, request: VerificationRequest) -> PendingCallback:
        error = VerificationTimeout(
            f"Payment {request.reference} still unconfirmed after "
            f"{request.attempt} attempt(s)"
        )
        return self._finish(request, VerificationOutcome.timeout, error=error)

    async def _fire(self, pending: PendingCallback) -> None:
        if pending is None:
            return
        callback, args = pending
        await notify(callback, *args)

    def _expire(self, request: VerificationRequest) -> None:
        pending = self._timed_out(request)
        if pending is None:
            return
        task = asyncio.get_running_loop().create_task(self._fire(pending))
        request.callback_task = task
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_tasks.discard)

    async def _attempt(self, request: VerificationRequest) -> VerificationResult:
        """Perform one verify call for a request and apply its outcome.

        Holds the request's lock for the duration of the call so no two
        attempts for the same request are ever in flight. If the request left
        ``verifying`` by the time the lock is acquired, no call is made: its
        cached result is returned, or the error that ended it is raised.
        """
        pending: PendingCallback = None
        error: Optional[TransportError] = None
        result: Optional[VerificationResult] = None

        async with request.lock:
            if not request.is_verifying:
                if request.result is not None:
                    return request.result
                if request.error is not None:
                    raise request.error
                raise VerificationStopped(
                    f"Payment verification {request.id} was stopped"
                )

            request.attempt += 1
            self.logger.debug(
                f"Verifying {request.category.value} payment {request.reference} "
                f"(attempt {request.attempt}/{request.max_retries})"
            )

            try:
                raw = await maybe_await(
                    self.verify_operation(
                        request.category, request.reference, request.resource_id
                    )
                )
            except Exception as exc:
                error = TransportError.wrap(exc)
            else:
                result = VerificationResult.from_payload(raw)

            if request.is_verifying:
                request.last_checked = datetime.now(timezone.utc)
                if error is not None:
                    if not error.retryable:
                        pending = self._finish(
                            request,
                            VerificationOutcome.failure,
                            error=VerificationFailure(
                                error.message, reference=request.reference
                            ),
                        )
                elif result.is_success:
                    pending = self._finish(request, VerificationOutcome.success, result=result)
                elif result.is_failure:
                    pending = self._finish(
                        request,
                        VerificationOutcome.failure,
                        result=result,
                        error=VerificationFailure(
                            result.message or "Payment verification failed",
                            reference=request.reference,
                        ),
                    )
                else:
                    self.logger.debug(f"Payment {request.reference} still pending")

        # Callbacks run outside the lock so they may call back in
        await self._fire(pending)
        if error is not None:
            raise error
        return result

    async def _run(self, request: VerificationRequest) -> None:
        try:
            while request.is_verifying:
                try:
                    await self._attempt(request)
                except BookingStatusError as exc:
                    if request.is_verifying:
                        self.logger.warning(
                            f"Error verifying payment {request.reference}, will retry: {exc}"
                        )
                if not request.is_verifying:
                    return

                if request.attempt >= request.max_retries:
                    await self._fire(self._timed_out(request))
                    return

                self.logger.debug(
                    f"Payment {request.reference} pending, waiting "
                    f"{request.retry_interval:.2f}s before next attempt"
                )
                await self._sleep(request.retry_interval)
        except Exception as exc:
            self.logger.exception(f"Payment verification {request.id} crashed")
            await self._fire(
                self._finish(
                    request,
                    VerificationOutcome.failure,
                    error=VerificationFailure(str(exc), reference=request.reference),
                )
            )
        finally:
            if request.is_verifying:
                request.outcome = VerificationOutcome.stopped
            self._release(request)


def _first_set(*values: Any) -> Any:
    return next(v for v in values if v is not None)


def _check_budget(overrides: dict) -> None:
    max_retries = overrides.get("max_retries")
    if max_retries is not None and max_retries < 1:
        raise ValueError(f"max_retries must be at least 1, got {max_retries}")
    retry_interval = overrides.get("retry_interval")
    if retry_interval is not None and retry_interval < 0:
        raise ValueError(f"retry_interval must not be negative, got {retry_interval}")
    timeout = overrides.get("timeout")
    if timeout is not None and timeout <= 0:
        raise ValueError(f"timeout must be positive, got {timeout}")
