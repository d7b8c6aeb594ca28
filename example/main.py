import asyncio

from booking_server import BookingServer
from booking_status_client.booking_api_client import BookingApiClient
from booking_status_client.models import PollingConfig, ResourceCategory
from booking_status_client.payment_verification import VerificationController
from booking_status_client.polling_coordinator import PollingCoordinator


async def status_changed(status):
    print(f"Status changed to: {status.status}")
    print(f"Last updated: {status.last_updated.isoformat()}")


async def main():
    PORT = 8000
    server = BookingServer(completion_time=20.0, error_rate=0.0)
    server.payments["PSK-1001"] = {"status": "success", "message": "Approved"}
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    async with BookingApiClient(f"http://localhost:{PORT}") as api:
        controller = VerificationController(api.verify_payment)
        verification_id = controller.handle_payment_redirect(
            "https://example.com/flights/payment/verify?reference=PSK-1001",
            ResourceCategory.flight,
        )
        try:
            result = await controller.wait(verification_id)
            print(f"Payment verified: {result.message}")
        except Exception as e:
            print(f"Payment not verified: {e}")

        done = asyncio.Event()
        final = {}

        def finish(status):
            final["status"] = status
            done.set()

        async with PollingCoordinator(PollingConfig(max_concurrent_polls=5)) as coordinator:
            coordinator.start_polling(
                (ResourceCategory.flight, "FL-42"),
                api.status_fetcher(ResourceCategory.flight),
                on_status_update=status_changed,
                on_complete=finish,
                on_timeout=finish,
            )
            await done.wait()

    status = final.get("status")
    print(f"Final status: {status.status if status else 'unknown'}")


if __name__ == "__main__":
    asyncio.run(main())
