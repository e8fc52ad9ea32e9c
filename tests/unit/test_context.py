"""Unit tests for request context."""

import asyncio

import pytest
from uuid_utils.compat import uuid7

from facturabot.core.context import (
    ActorType,
    RequestContext,
    create_context,
    get_current_context,
    get_current_context_or_none,
    request_context,
    reset_context,
    set_context,
)
from facturabot.core.exceptions import ContextNotSetError


class TestRequestContextCreation:
    """Tests for RequestContext creation."""

    def test_create_context_minimal(self):
        tenant_id = uuid7()

        ctx = create_context(tenant_id=tenant_id)

        assert ctx.tenant_id == tenant_id
        assert ctx.actor_id is None
        assert ctx.actor_type == ActorType.HUMAN
        assert ctx.request_id != ctx.correlation_id

    def test_create_context_with_correlation(self):
        correlation_id = uuid7()

        ctx = create_context(
            tenant_id=uuid7(),
            actor_id="scheduler",
            actor_type=ActorType.SYSTEM,
            correlation_id=correlation_id,
        )

        assert ctx.correlation_id == correlation_id
        assert ctx.actor_type == ActorType.SYSTEM

    def test_context_is_frozen(self):
        ctx = create_context(tenant_id=uuid7())

        with pytest.raises(ValueError):
            ctx.actor_id = "someone"

    def test_to_log_dict(self):
        ctx = RequestContext(tenant_id=uuid7(), actor_id="telegram:5512")

        log_dict = ctx.to_log_dict()

        assert log_dict == {
            "request_id": str(ctx.request_id),
            "tenant_id": str(ctx.tenant_id),
            "actor_id": "telegram:5512",
            "actor_type": "human",
            "correlation_id": str(ctx.correlation_id),
        }


class TestContextManager:
    """Tests for the request_context manager."""

    def test_sets_and_restores(self):
        ctx = create_context(tenant_id=uuid7())

        with request_context(ctx) as active:
            assert active is ctx
            assert get_current_context() is ctx

        assert get_current_context_or_none() is None

    def test_nested_contexts(self):
        outer = create_context(tenant_id=uuid7())
        inner = create_context(tenant_id=uuid7())

        with request_context(outer):
            with request_context(inner):
                assert get_current_context() is inner
            assert get_current_context() is outer

    def test_exception_restores(self):
        ctx = create_context(tenant_id=uuid7())

        with pytest.raises(RuntimeError):
            with request_context(ctx):
                raise RuntimeError("boom")

        assert get_current_context_or_none() is None

    def test_get_current_context_raises_when_not_set(self):
        with pytest.raises(ContextNotSetError):
            get_current_context()

    def test_set_and_reset_low_level(self):
        ctx = create_context(tenant_id=uuid7())

        token = set_context(ctx)
        assert get_current_context() is ctx
        reset_context(token)

        assert get_current_context_or_none() is None


class TestAsyncContextIsolation:
    """Tests for context isolation between tasks."""

    @pytest.mark.asyncio
    async def test_context_isolated_across_tasks(self):
        seen: dict[str, object] = {}

        async def operator(name: str) -> None:
            ctx = create_context(tenant_id=uuid7(), actor_id=name)
            with request_context(ctx):
                await asyncio.sleep(0.01)
                seen[name] = get_current_context().actor_id

        await asyncio.gather(operator("telegram:1"), operator("telegram:2"))

        assert seen == {"telegram:1": "telegram:1", "telegram:2": "telegram:2"}

    @pytest.mark.asyncio
    async def test_context_propagates_to_subtask(self):
        ctx = create_context(tenant_id=uuid7())

        async def child():
            return get_current_context().tenant_id

        with request_context(ctx):
            tenant_id = await asyncio.create_task(child())

        assert tenant_id == ctx.tenant_id
