import asyncio
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from booking_status_client.errors import (
    TransportError,
    UnknownSessionError,
    VerificationFailure,
    VerificationStopped,
    VerificationTimeout,
)
from booking_status_client.models import (
    ResourceCategory,
    VerificationConfig,
    VerificationOutcome,
)
from booking_status_client.payment_verification import (
    VerificationController,
    extract_payment_reference,
    is_payment_redirect_url,
)
from conftest import Recorder, settle

PENDING = {"status": "pending"}
DECLINED = {"success": False, "message": "declined"}


class ScriptedGateway:
    """Fake verify operation replaying scripted responses, repeating the last one."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[tuple] = []

    async def __call__(self, category, reference, resource_id=None):
        self.calls.append((category, reference, resource_id))
        index = min(len(self.calls), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response


class Outcomes:
    def __init__(self):
        self.success = Recorder()
        self.failure = Recorder()
        self.timeout = Recorder()

    @property
    def callbacks(self) -> dict:
        return {
            "on_success": self.success,
            "on_failure": self.failure,
            "on_timeout": self.timeout,
        }

    @property
    def total(self) -> int:
        return self.success.count + self.failure.count + self.timeout.count


@pytest_asyncio.fixture
async def make_controller(clock) -> AsyncGenerator:
    controllers = []

    def factory(gateway, **config) -> VerificationController:
        controller = VerificationController(
            gateway, config=VerificationConfig(**config), sleep=clock.sleep
        )
        controllers.append(controller)
        return controller

    yield factory
    for controller in controllers:
        controller.stop_all_verifications()


@pytest.mark.asyncio
async def test_success_after_pending_attempts(make_controller, clock):
    gateway = ScriptedGateway(PENDING, PENDING, {"verified": True})
    controller = make_controller(gateway)
    outcomes = Outcomes()

    verification_id = controller.start_verification(
        "PSK-1", ResourceCategory.flight, **outcomes.callbacks
    )
    await settle()
    await clock.advance()
    await clock.advance()

    assert outcomes.success.count == 1
    assert outcomes.total == 1
    assert outcomes.success.calls[0][0].raw == {"verified": True}
    assert clock.delays == [10.0, 10.0]

    item = controller.get_verification_item(verification_id)
    assert item.outcome == VerificationOutcome.success
    assert item.attempt == 3
    assert await controller.wait(verification_id) is not None

    await clock.advance()
    assert len(gateway.calls) == 3
    assert outcomes.total == 1


@pytest.mark.asyncio
async def test_declined_payment_fails_once_without_retry(make_controller, clock):
    gateway = ScriptedGateway(DECLINED, {"success": True})
    controller = make_controller(gateway)
    outcomes = Outcomes()

    verification_id = controller.start_verification(
        "PSK-2", "hotel", **outcomes.callbacks
    )
    await settle()
    await clock.advance()

    assert outcomes.failure.count == 1
    error = outcomes.failure.calls[0][0]
    assert isinstance(error, VerificationFailure)
    assert "declined" in str(error)
    assert outcomes.success.count == 0
    assert len(gateway.calls) == 1
    with pytest.raises(VerificationFailure):
        await controller.wait(verification_id)


@pytest.mark.asyncio
async def test_verify_once_declined_fires_failure(make_controller):
    gateway = ScriptedGateway(DECLINED)
    controller = make_controller(gateway)
    outcomes = Outcomes()

    result = await controller.verify_once(
        ResourceCategory.package, "PSK-3", **outcomes.callbacks
    )

    assert result.is_failure
    assert result.message == "declined"
    assert outcomes.failure.count == 1
    assert "declined" in str(outcomes.failure.calls[0][0])
    assert outcomes.success.count == 0
    assert controller.get_verification_status().active_verifications == 0


@pytest.mark.asyncio
async def test_verify_once_pending_is_a_timeout(make_controller):
    controller = make_controller(ScriptedGateway(PENDING))
    outcomes = Outcomes()

    result = await controller.verify_once("flight", "PSK-4", **outcomes.callbacks)

    assert not result.is_success and not result.is_failure
    assert outcomes.timeout.count == 1
    assert outcomes.total == 1


@pytest.mark.asyncio
async def test_verify_once_transport_error_is_raised(make_controller):
    controller = make_controller(ScriptedGateway(ConnectionError("reset by peer")))
    outcomes = Outcomes()

    with pytest.raises(TransportError):
        await controller.verify_once("flight", "PSK-5", **outcomes.callbacks)
    assert outcomes.failure.count == 1
    assert outcomes.total == 1


@pytest.mark.asyncio
async def test_verify_once_joins_background_verification(make_controller, clock):
    gateway = ScriptedGateway(PENDING, {"status": "success"})
    controller = make_controller(gateway)
    outcomes = Outcomes()

    verification_id = controller.start_verification(
        "PSK-6", "flight", **outcomes.callbacks
    )
    await settle()
    assert len(gateway.calls) == 1

    result = await controller.verify_once("flight", "PSK-6")
    await settle()

    assert result.is_success
    assert outcomes.success.count == 1
    assert controller.get_verification_item(verification_id).outcome == VerificationOutcome.success

    await clock.advance()
    assert len(gateway.calls) == 2
    assert outcomes.total == 1


class SlowGateway:
    """Verify operation that blocks until released, counting its calls."""

    def __init__(self):
        self.release = asyncio.Event()
        self.calls: list[str] = []

    async def __call__(self, category, reference, resource_id=None):
        self.calls.append(reference)
        await self.release.wait()
        return {"success": True}


@pytest.mark.asyncio
async def test_verify_once_waiting_on_stopped_verification_makes_no_call(make_controller):
    gateway = SlowGateway()
    controller = make_controller(gateway)
    outcomes = Outcomes()

    verification_id = controller.start_verification("PSK-15", "flight", **outcomes.callbacks)
    await settle()
    joined = asyncio.ensure_future(controller.verify_once("flight", "PSK-15"))
    await settle()

    controller.stop_verification(verification_id)
    gateway.release.set()
    await settle()

    with pytest.raises(VerificationStopped):
        await joined
    assert gateway.calls == ["PSK-15"]
    assert outcomes.total == 0


@pytest.mark.asyncio
async def test_verify_once_waiting_on_expired_verification_makes_no_call(make_controller):
    gateway = SlowGateway()
    controller = make_controller(gateway, timeout=0.05)
    outcomes = Outcomes()

    controller.start_verification("PSK-16", "flight", **outcomes.callbacks)
    await settle()
    joined = asyncio.ensure_future(controller.verify_once("flight", "PSK-16"))
    await asyncio.sleep(0.1)
    gateway.release.set()
    await settle()

    with pytest.raises(VerificationTimeout):
        await joined
    assert gateway.calls == ["PSK-16"]
    assert outcomes.timeout.count == 1
    assert outcomes.total == 1


@pytest.mark.asyncio
async def test_wait_includes_deadline_callback(make_controller):
    fired = []

    async def on_timeout():
        await asyncio.sleep(0.01)
        fired.append("timeout")

    controller = make_controller(ScriptedGateway(PENDING), timeout=0.05)
    verification_id = controller.start_verification("PSK-17", "flight", on_timeout=on_timeout)

    with pytest.raises(VerificationTimeout):
        await controller.wait(verification_id)
    assert fired == ["timeout"]


@pytest.mark.asyncio
async def test_non_positive_budgets_are_rejected(make_controller):
    controller = make_controller(ScriptedGateway(PENDING))

    with pytest.raises(ValueError):
        controller.start_verification("PSK-18", "flight", max_retries=0)
    with pytest.raises(ValueError):
        controller.start_verification("PSK-18", "flight", timeout=0)
    assert controller.get_verification_status().active_verifications == 0

    verification_id = controller.start_verification("PSK-18", "flight", max_retries=1)
    assert controller.get_verification_item(verification_id).max_retries == 1


@pytest.mark.asyncio
async def test_retry_budget_exhausted_times_out(make_controller, clock):
    gateway = ScriptedGateway(PENDING)
    controller = make_controller(gateway, max_retries=3, retry_interval=2.0)
    outcomes = Outcomes()

    verification_id = controller.start_verification("PSK-7", "flight", **outcomes.callbacks)
    await settle()
    await clock.advance()
    await clock.advance()

    assert outcomes.timeout.calls == [()]
    assert outcomes.total == 1
    assert len(gateway.calls) == 3
    assert clock.delays == [2.0, 2.0]
    with pytest.raises(VerificationTimeout):
        await controller.wait(verification_id)


@pytest.mark.asyncio
async def test_wall_clock_timeout(make_controller):
    gateway = ScriptedGateway(PENDING)
    controller = make_controller(gateway, timeout=0.05)
    outcomes = Outcomes()

    verification_id = controller.start_verification("PSK-8", "flight", **outcomes.callbacks)
    await asyncio.sleep(0.1)
    await settle()

    assert outcomes.timeout.count == 1
    assert outcomes.total == 1
    assert controller.get_verification_item(verification_id).outcome == VerificationOutcome.timeout


@pytest.mark.asyncio
async def test_transport_errors_are_retried(make_controller, clock):
    gateway = ScriptedGateway(TransportError("502 from gateway"), {"success": True})
    controller = make_controller(gateway)
    outcomes = Outcomes()

    controller.start_verification("PSK-9", "flight", **outcomes.callbacks)
    await settle()
    assert outcomes.total == 0

    await clock.advance()
    assert outcomes.success.count == 1
    assert outcomes.total == 1


@pytest.mark.asyncio
async def test_non_retryable_transport_error_fails(make_controller, clock):
    gateway = ScriptedGateway(TransportError("Transaction not found", retryable=False))
    controller = make_controller(gateway)
    outcomes = Outcomes()

    controller.start_verification("PSK-10", "flight", **outcomes.callbacks)
    await settle()
    await clock.advance()

    assert outcomes.failure.count == 1
    assert "not found" in str(outcomes.failure.calls[0][0])
    assert len(gateway.calls) == 1


@pytest.mark.asyncio
async def test_stop_during_in_flight_call_suppresses_callbacks(make_controller):
    release = asyncio.Event()
    outcomes = Outcomes()

    async def slow_gateway(category, reference, resource_id=None):
        await release.wait()
        return {"success": True}

    controller = make_controller(slow_gateway)
    verification_id = controller.start_verification("PSK-11", "flight", **outcomes.callbacks)
    await settle()
    controller.stop_verification(verification_id)
    release.set()
    await settle()

    assert outcomes.total == 0
    assert controller.get_verification_item(verification_id).outcome == VerificationOutcome.stopped
    assert await controller.wait(verification_id) is None


@pytest.mark.asyncio
async def test_starting_again_supersedes_same_reference(make_controller, clock):
    gateway = ScriptedGateway(PENDING)
    controller = make_controller(gateway)
    first, second = Outcomes(), Outcomes()

    first_id = controller.start_verification("PSK-12", "flight", **first.callbacks)
    second_id = controller.start_verification("PSK-12", "flight", **second.callbacks)
    await settle()

    assert controller.get_verification_item(first_id).outcome == VerificationOutcome.stopped
    assert controller.is_verifying(second_id)
    assert controller.get_verification_status().active_verifications == 1
    assert len(gateway.calls) == 1


@pytest.mark.asyncio
async def test_retry_after_failure_restarts_from_zero(make_controller, clock):
    gateway = ScriptedGateway(DECLINED, {"success": True})
    controller = make_controller(gateway)
    outcomes = Outcomes()

    first_id = controller.start_verification("PSK-13", "flight", **outcomes.callbacks)
    await settle()
    assert outcomes.failure.count == 1

    second_id = controller.retry_verification("PSK-13")
    assert second_id != first_id
    assert controller.get_verification_item(second_id).attempt == 0
    await settle()

    assert outcomes.success.count == 1
    assert controller.get_verification_item(second_id).attempt == 1


@pytest.mark.asyncio
async def test_retry_unknown_verification(make_controller):
    controller = make_controller(ScriptedGateway(PENDING))
    with pytest.raises(UnknownSessionError):
        controller.retry_verification("nothing-here")


@pytest.mark.asyncio
async def test_resource_id_is_passed_and_required(make_controller):
    gateway = ScriptedGateway({"success": True})
    controller = make_controller(gateway)

    with pytest.raises(ValueError):
        controller.start_verification("PSK-14", ResourceCategory.visa)
    with pytest.raises(ValueError):
        controller.start_verification("PSK-14", "car-hire")

    await controller.verify_once("insurance", "PSK-14", "POL-77")
    assert gateway.calls == [(ResourceCategory.insurance, "PSK-14", "POL-77")]


@pytest.mark.asyncio
async def test_handle_payment_redirect(make_controller):
    controller = make_controller(ScriptedGateway({"success": True}))
    outcomes = Outcomes()

    assert controller.handle_payment_redirect("https://shop.example/verify?foo=1", "flight") is None

    verification_id = controller.handle_payment_redirect(
        "https://shop.example/verify?trxref=T-55", "flight", **outcomes.callbacks
    )
    await settle()
    assert controller.get_verification_item(verification_id).reference == "T-55"
    assert outcomes.success.count == 1


def test_payment_reference_extraction():
    assert extract_payment_reference("https://a.example/cb?reference=R1&trxref=T1") == "R1"
    assert extract_payment_reference("https://a.example/cb?trxref=T1") == "T1"
    assert extract_payment_reference("https://a.example/cb") is None
    assert is_payment_redirect_url("https://a.example/cb?trxref=T1")
    assert not is_payment_redirect_url("https://a.example/cb?ref=T1")
