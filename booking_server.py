import random
from datetime import datetime, timezone

from aiohttp import web
from loguru import logger


class BookingServer:
    """Fake booking backend whose bookings confirm after ``completion_time`` seconds"""

    def __init__(self, completion_time: float = 10.0, error_rate: float = 0.1):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.started: dict[str, datetime] = {}
        self.payments: dict[str, dict] = {}
        self.runner = None
        self.app = web.Application()
        self.app.router.add_get(
            "/products/flights/booking/{reference}/status", self.handle_status
        )
        self.app.router.add_get(
            "/products/hotels/booking/{reference}/status", self.handle_status
        )
        self.app.router.add_get("/products/visa/{reference}/status", self.handle_status)
        self.app.router.add_get(
            "/products/travel-insurance/policy/status/{reference}", self.handle_status
        )
        self.app.router.add_get(
            "/products/packages/booking/{reference}/status", self.handle_status
        )
        self.app.router.add_post("/products/flights/verify-payment", self.handle_verify)
        self.app.router.add_post("/products/hotels/verify-payment", self.handle_verify)
        self.app.router.add_post("/products/packages/verify-payment", self.handle_verify)
        self.app.router.add_post(
            "/products/visa/{resource_id}/verify-payment", self.handle_verify
        )
        self.app.router.add_post(
            "/products/travel-insurance/policy/{resource_id}/verify-payment",
            self.handle_verify,
        )
        self.logger = logger

    async def handle_status(self, request):
        reference = request.match_info["reference"]
        now = datetime.now(timezone.utc)
        start_time = self.started.setdefault(reference, now)
        updated = now.isoformat()

        if random.random() < self.error_rate:
            self.logger.info(f"Returning failed status for {reference}")
            return web.json_response({"status": "failed", "lastUpdated": updated})

        elapsed = (now - start_time).total_seconds()

        if elapsed >= self.completion_time:
            self.logger.info(f"Returning confirmed status for {reference}")
            status = "confirmed"
        elif elapsed >= self.completion_time / 2:
            status = "processing"
        else:
            status = "pending"
        self.logger.info(f"Returning {status} status for {reference} (elapsed: {elapsed:.1f}s)")
        return web.json_response(
            {"success": True, "data": {"status": status, "lastUpdated": updated}}
        )

    async def handle_verify(self, request):
        body = await request.json()
        reference = body.get("reference", "")
        payment = self.payments.get(reference)
        if payment is None:
            self.logger.info(f"Unknown payment reference {reference}")
            raise web.HTTPNotFound(reason="Transaction not found")

        self.logger.info(f"Returning payment result for {reference}: {payment}")
        return web.json_response(payment)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
