#!/usr/bin/env python3
"""
Smoke test for the scheduled delivery flow against a running service.

Steps:
1. Estimate the cost of a message
2. Schedule a message that is already due and watch the wake-up notification
3. Wait for the worker to deliver it (or force a processing pass)
4. Schedule a future message and cancel it
5. Check that cancelling it again is refused
6. Look it up through the batch update and owner listing endpoints
"""

import asyncio
import json
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import redis.asyncio as redis
from rich import box
from rich.console import Console
from rich.table import Table

# Configuration
API_URL = os.getenv("API_URL", "http://localhost:8000")
API_PREFIX = "/api/v1/scheduled"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
WAKEUP_CHANNEL = os.getenv("SCHEDULER_WAKEUP_CHANNEL", "scheduled:due")

RECIPIENTS = ["+2348030000001", "+2348030000002", "+2348030000003"]

console = Console()


class ScheduleFlowTester:
    """Drives the scheduling API end to end."""

    def __init__(self):
        self.http_client: Optional[httpx.AsyncClient] = None
        self.redis_client: Optional[redis.Redis] = None
        self.results: List[Dict[str, Any]] = []

    async def setup(self) -> bool:
        console.print("\n[bold cyan]Setting up connections...[/bold cyan]")
        self.http_client = httpx.AsyncClient(base_url=API_URL, timeout=30.0)
        self.redis_client = redis.Redis.from_url(REDIS_URL, decode_responses=True)

        try:
            response = await self.http_client.get("/ready")
            if response.status_code != 200:
                console.print(f"✗ Service not ready: {response.text}", style="red")
                return False
            console.print("✓ Service ready", style="green")
            console.print(f"  Providers: {response.json()['checks']['providers']}")

            await self.redis_client.ping()
            console.print("✓ Redis connection successful", style="green")
            return True
        except (httpx.HTTPError, redis.RedisError) as e:
            console.print(f"✗ Connection failed: {e}", style="red")
            return False

    async def cleanup(self):
        if self.http_client:
            await self.http_client.aclose()
        if self.redis_client:
            await self.redis_client.aclose()

    def record(self, name: str, success: bool, detail: str = ""):
        self.results.append({"name": name, "success": success, "detail": detail})
        style = "green" if success else "red"
        console.print(f"  {'✓' if success else '✗'} {name} {detail}", style=style)

    async def step_estimate(self):
        console.print("\n[cyan]Step 1: Estimating cost...[/cyan]")
        response = await self.http_client.post(
            f"{API_PREFIX}/estimate",
            json={"kind": "text", "content": "a" * 161, "recipients": RECIPIENTS}
        )
        if response.status_code != 200:
            self.record("estimate", False, f"HTTP {response.status_code}")
            return
        data = response.json()
        self.record("estimate", data["segments"] == 2, f"{data['segments']} segment(s), {data['total_cost']}")

    async def step_schedule_due(self) -> Optional[str]:
        console.print("\n[cyan]Step 2: Scheduling a message that is already due...[/cyan]")
        pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(WAKEUP_CHANNEL)

        try:
            response = await self.http_client.post(API_PREFIX, json={
                "owner_ref": "smoke-test",
                "kind": "text",
                "content": "Smoke test: scheduled delivery",
                "recipients": RECIPIENTS,
                "scheduled_at": datetime.now(timezone.utc).isoformat(),
            })
            if response.status_code != 201:
                self.record("schedule due message", False, f"HTTP {response.status_code}: {response.text}")
                return None
            message_id = response.json()["id"]
            self.record("schedule due message", True, message_id[:8])

            received = False
            deadline = time.time() + 5
            while not received and time.time() < deadline:
                # Subscribe confirmations come back as None
                notification = await pubsub.get_message(timeout=1.0)
                if notification:
                    received = json.loads(notification["data"]).get("message_id") == message_id
            if received:
                self.record("wake-up published", True)
            else:
                self.record("wake-up published", False, "no notification within 5s")
            return message_id
        finally:
            await pubsub.unsubscribe(WAKEUP_CHANNEL)
            await pubsub.aclose()

    async def step_wait_for_delivery(self, message_id: str):
        console.print("\n[cyan]Step 3: Waiting for delivery...[/cyan]")
        deadline = time.time() + 15
        status = None
        while time.time() < deadline:
            response = await self.http_client.get(f"{API_PREFIX}/{message_id}")
            status = response.json()["status"]
            if status in ("sent", "failed"):
                break
            await asyncio.sleep(1)

        if status == "pending":
            console.print("  Worker idle, forcing a processing pass")
            summary = await self.http_client.post(f"{API_PREFIX}/process")
            console.print(f"  Summary: {summary.json()}")
            status = (await self.http_client.get(f"{API_PREFIX}/{message_id}")).json()["status"]

        self.record("delivered", status == "sent", f"status={status}")
        if status == "sent":
            delivery = await self.http_client.get(f"{API_PREFIX}/{message_id}/delivery")
            console.print(f"  Provider status: {delivery.json()['status']}")

    async def step_cancel(self):
        console.print("\n[cyan]Steps 4-6: Scheduling and cancelling a future message...[/cyan]")
        response = await self.http_client.post(API_PREFIX, json={
            "owner_ref": "smoke-test",
            "content": "Smoke test: to be cancelled",
            "recipients": RECIPIENTS[:1],
            "scheduled_at": (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat(),
        })
        if response.status_code != 201:
            self.record("schedule future message", False, f"HTTP {response.status_code}")
            return
        message_id = response.json()["id"]

        first = await self.http_client.post(f"{API_PREFIX}/{message_id}/cancel")
        self.record("cancel", first.status_code == 200, first.json().get("status", ""))

        second = await self.http_client.post(f"{API_PREFIX}/{message_id}/cancel")
        self.record("cancel again refused", second.status_code == 409, f"HTTP {second.status_code}")

        updates = await self.http_client.post(
            f"{API_PREFIX}/updates", json={"ids": [message_id], "owner_ref": "smoke-test"}
        )
        statuses = [u["status"] for u in updates.json().get("updates", [])]
        self.record("batch update shows cancelled", statuses == ["cancelled"], str(statuses))

        listing = await self.http_client.get(API_PREFIX, params={"owner_ref": "smoke-test", "limit": 100})
        listed = {item["id"] for item in listing.json().get("items", [])}
        self.record("listed for owner", message_id in listed, f"{listing.json().get('total', 0)} total")

    def display_summary(self):
        table = Table(title="Scheduled Delivery Smoke Test", box=box.ROUNDED)
        table.add_column("Check", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Detail", style="dim")

        for result in self.results:
            color = "green" if result["success"] else "red"
            table.add_row(
                result["name"],
                f"[{color}]{'✓' if result['success'] else '✗'}[/{color}]",
                result["detail"]
            )
        console.print()
        console.print(table)

        if all(r["success"] for r in self.results):
            console.print("\n[bold green]✓ All checks passed![/bold green]\n")
        else:
            console.print("\n[bold yellow]⚠ Some checks failed[/bold yellow]")
            console.print("  • Worker disabled: set SCHEDULER_ENABLED=true or use POST /process")
            console.print("  • Providers down: check /ready for provider health\n")

    async def run(self):
        await self.step_estimate()
        message_id = await self.step_schedule_due()
        if message_id:
            await self.step_wait_for_delivery(message_id)
        await self.step_cancel()
        self.display_summary()
        return all(r["success"] for r in self.results)


async def main():
    tester = ScheduleFlowTester()
    passed = False
    try:
        if not await tester.setup():
            console.print("\n[red]Failed to set up connections. Exiting.[/red]")
            sys.exit(1)
        passed = await tester.run()
    except KeyboardInterrupt:
        console.print("\n\n[yellow]Interrupted by user[/yellow]")
    finally:
        await tester.cleanup()

    sys.exit(0 if passed else 1)


if __name__ == "__main__":
    asyncio.run(main())
