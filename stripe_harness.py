# stripe_harness.py
"""
Stripe account lifecycle used to exercise onboarding end to end: create an
Express account, onboard it through the browser, wait until Stripe enables
charges, then confirm a payment on it.

Stripe blocking calls run in worker threads so many flows can share one
event loop.
"""

import asyncio
import logging
import os
import random
import time
from typing import Any, Dict, Optional

import stripe

from onboard_runner import OnboardResult, onboard

logger = logging.getLogger("OnboardRunner.harness")


def is_ci() -> bool:
    return os.getenv("CI", "").lower() not in ("", "0", "false")


class AccountCreateLimiter:
    """
    Bounded gate around account creation. Stripe allows roughly five account
    creations per second, so at most max_concurrent holders wait delay_s each
    before creating. Share one instance between every concurrent flow.
    """
    def __init__(self, max_concurrent: int = 3, delay_s: float = 1.25):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.delay_s = delay_s
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def __aenter__(self):
        await self._semaphore.acquire()
        try:
            await asyncio.sleep(self.delay_s)
        except BaseException:
            self._semaphore.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._semaphore.release()


class StripeHarness:
    def __init__(self, api_key: str, limiter: Optional[AccountCreateLimiter] = None):
        if not api_key:
            raise ValueError("A Stripe secret key is required")
        self.api_key = api_key
        self.limiter = limiter or AccountCreateLimiter()

    async def create_account(self) -> Any:
        async with self.limiter:
            account = await asyncio.to_thread(stripe.Account.create, type="express", api_key=self.api_key)
        logger.info(f"Created Express account {account.id}")
        return account

    async def create_onboarding_link(self, account_id: str) -> str:
        link = await asyncio.to_thread(
            stripe.AccountLink.create,
            account=account_id,
            type="account_onboarding",
            refresh_url="https://stripe.com",
            return_url="https://stripe.com",
            api_key=self.api_key,
        )
        return link.url

    async def create_and_onboard_account(self, values: Optional[Dict[str, Any]] = None, **option_overrides) -> Any:
        """Create an account and run the onboarding form for it. Returns the account."""
        values = values or {}
        account = await self.create_account()
        url = await self.create_onboarding_link(account.id)

        options = {
            "headless": is_ci(),
            "debug": False if is_ci() else (values or True),
            "url": url,
            "values": values,
        }
        options.update(option_overrides)
        result: OnboardResult = await onboard(options)
        logger.info(f"Account {account.id} onboarding finished: {result.outcome.value}")
        return account

    async def wait_for_account_verification(self, account_id: str, timeout_s: float = 180.0, interval_s: float = 5.0) -> Any:
        """Poll the account until charges are enabled."""
        deadline = time.monotonic() + timeout_s
        while True:
            account = await asyncio.to_thread(stripe.Account.retrieve, account_id, api_key=self.api_key)
            if account.charges_enabled:
                return account
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Account {account_id} was not verified within {timeout_s:.0f}s")
            await asyncio.sleep(interval_s)

    async def confirm_payment(self, account_id: str) -> Any:
        """Confirm a card payment of a random amount on the connected account."""
        return await asyncio.to_thread(
            stripe.PaymentIntent.create,
            amount=random.randint(100, 1000000),
            currency="usd",
            confirm=True,
            payment_method="pm_card_visa",
            payment_method_types=["card"],
            stripe_account=account_id,
            api_key=self.api_key,
        )
