"""
Resource store tests: commit, rollback and the bounded transaction timeout.

Run with: pytest tests/test_store.py -v
"""

import asyncio

import pytest
from sqlalchemy import select

from kitsune.core.errors import TransientError
from kitsune.models import Customer


async def find_customer(store, line_user_id: str):
    async with store.session() as session:
        result = await session.execute(select(Customer).where(Customer.line_user_id == line_user_id))
        return result.scalar_one_or_none()


@pytest.mark.asyncio
async def test_commit_on_success(store):
    async def insert(session):
        customer = Customer(line_user_id="U-commit", display_name="Mei")
        session.add(customer)
        await session.flush()
        return customer.id

    customer_id = await store.run_in_transaction(insert)

    stored = await find_customer(store, "U-commit")
    assert stored is not None
    assert stored.id == customer_id


@pytest.mark.asyncio
async def test_error_rolls_back_insert(store):
    async def insert_then_fail(session):
        session.add(Customer(line_user_id="U-rollback", display_name="Mei"))
        await session.flush()
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await store.run_in_transaction(insert_then_fail)

    assert await find_customer(store, "U-rollback") is None


@pytest.mark.asyncio
async def test_timeout_is_transient_and_commits_nothing(store):
    async def slow_insert(session):
        session.add(Customer(line_user_id="U-slow", display_name="Mei"))
        await session.flush()
        await asyncio.sleep(5)

    with pytest.raises(TransientError) as exc_info:
        await store.run_in_transaction(slow_insert, timeout=0.05)

    assert exc_info.value.status_code == 503
    assert exc_info.value.code == "STORE_TIMEOUT"
    assert await find_customer(store, "U-slow") is None


@pytest.mark.asyncio
async def test_store_usable_after_timeout(store):
    async def slow(session):
        await asyncio.sleep(5)

    with pytest.raises(TransientError):
        await store.run_in_transaction(slow, timeout=0.05)

    async def insert(session):
        session.add(Customer(line_user_id="U-after", display_name="Mei"))

    await store.run_in_transaction(insert)
    assert await find_customer(store, "U-after") is not None
