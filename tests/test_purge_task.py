"""
tests/test_purge_task.py -- The background expired-token purge loop in api/main.py.

Covers:
  - a store error is logged and the loop keeps running
"""

from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace

from sqlalchemy.exc import OperationalError

from api.main import _purge_loop


class FlakyStore:
    """Fails the first purge, then succeeds."""

    def __init__(self) -> None:
        self.calls = 0

    def purge_expired_tokens(self, now) -> int:
        self.calls += 1
        if self.calls == 1:
            raise OperationalError("DELETE FROM refresh_tokens", {}, Exception("database is locked"))
        return 2


def test_purge_loop_survives_store_error(caplog):
    store = FlakyStore()
    app = SimpleNamespace(state=SimpleNamespace(store=store))

    async def run() -> bool:
        task = asyncio.create_task(_purge_loop(app, 0))
        for _ in range(500):
            if store.calls >= 3:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return task.cancelled()

    with caplog.at_level(logging.INFO, logger="authcore.api"):
        cancelled = asyncio.run(run())

    assert cancelled
    assert store.calls >= 3
    assert "Expired-token purge failed" in caplog.text
    assert "Purged 2 expired token(s)" in caplog.text
