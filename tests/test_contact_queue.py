"""Tests for ContactQueue — one live instance per contact, FIFO behind it."""
import pytest

from lifecycle.contact_queue import ContactQueue
from lifecycle.errors import QueueInvariantViolation
from models.schemas import InstanceState, StateEvent


@pytest.fixture
def admitted():
    return []


@pytest.fixture
def queue(store, state_machine, admitted):
    async def on_admitted(instance):
        admitted.append(instance.id)

    q = ContactQueue(store, state_machine, on_admitted=on_admitted)
    state_machine.on_terminal_state(q.on_instance_terminal)
    return q


class TestAdmission:
    @pytest.mark.asyncio
    async def test_free_contact_stays_created(self, queue, make_instance, store):
        inst = await make_instance()
        assert await queue.enqueue_or_activate(inst) == InstanceState.CREATED
        assert (await store.get_by_id(inst.id)).state == InstanceState.CREATED

    @pytest.mark.asyncio
    async def test_busy_contact_queues(self, queue, make_instance, store):
        await make_instance(InstanceState.ACTIVE)
        second = await make_instance()
        assert await queue.enqueue_or_activate(second) == InstanceState.QUEUED
        assert (await store.get_by_id(second.id)).state == InstanceState.QUEUED

    @pytest.mark.asyncio
    async def test_paused_instance_still_holds_the_contact(self, queue, make_instance):
        await make_instance(InstanceState.PAUSED)
        second = await make_instance()
        assert await queue.enqueue_or_activate(second) == InstanceState.QUEUED

    @pytest.mark.asyncio
    async def test_other_contacts_unaffected(self, queue, make_instance):
        await make_instance(InstanceState.ACTIVE, contact="+100")
        other = await make_instance(contact="+200")
        assert await queue.enqueue_or_activate(other) == InstanceState.CREATED

    @pytest.mark.asyncio
    async def test_terminal_instances_do_not_block(self, queue, make_instance):
        await make_instance(InstanceState.COMPLETED)
        await make_instance(InstanceState.FAILED)
        fresh = await make_instance()
        assert await queue.enqueue_or_activate(fresh) == InstanceState.CREATED

    @pytest.mark.asyncio
    async def test_queueing_rejected_raises(self, queue, make_instance):
        await make_instance(InstanceState.ACTIVE)
        # An instance already past CREATED cannot take the queueing event
        odd = await make_instance(InstanceState.WAITING_FOR_REPLY)
        with pytest.raises(QueueInvariantViolation):
            await queue.enqueue_or_activate(odd)


class TestDequeue:
    @pytest.mark.asyncio
    async def test_oldest_queued_instance_admitted_on_terminal(
        self, queue, make_instance, store, state_machine, admitted,
    ):
        live = await make_instance(InstanceState.ACTIVE)
        first = await make_instance()
        await queue.enqueue_or_activate(first)
        second = await make_instance()
        await queue.enqueue_or_activate(second)
        other_contact = await make_instance(InstanceState.QUEUED, contact="+999")

        await state_machine.transition(live.id, StateEvent.END_CONVERSATION)

        assert (await store.get_by_id(first.id)).state == InstanceState.CREATED
        assert (await store.get_by_id(second.id)).state == InstanceState.QUEUED
        assert (await store.get_by_id(other_contact.id)).state == InstanceState.QUEUED
        assert admitted == [first.id]

    @pytest.mark.asyncio
    async def test_queue_order_is_creation_order(self, queue, make_instance):
        await make_instance(InstanceState.ACTIVE)
        ids = []
        for _ in range(3):
            inst = await make_instance()
            await queue.enqueue_or_activate(inst)
            ids.append(inst.id)
        assert [i.id for i in await queue.get_queue_for_contact("+100")] == ids

    @pytest.mark.asyncio
    async def test_paused_queued_instance_is_skipped(self, queue, make_instance, store, state_machine):
        live = await make_instance(InstanceState.ACTIVE)
        parked = await make_instance()
        await queue.enqueue_or_activate(parked)
        waiting = await make_instance()
        await queue.enqueue_or_activate(waiting)
        await state_machine.transition(parked.id, StateEvent.PAUSE)

        await state_machine.transition(live.id, StateEvent.CANCEL)
        assert (await store.get_by_id(waiting.id)).state == InstanceState.CREATED
        assert (await store.get_by_id(parked.id)).state == InstanceState.PAUSED

    @pytest.mark.asyncio
    async def test_nothing_queued(self, queue, make_instance):
        inst = await make_instance(InstanceState.COMPLETED)
        assert await queue.on_instance_terminal(inst.id) is None
        assert await queue.on_instance_terminal("missing") is None

    @pytest.mark.asyncio
    async def test_cancelling_a_queued_instance_admits_nobody(
        self, queue, make_instance, store, state_machine, admitted,
    ):
        live = await make_instance(InstanceState.ACTIVE)
        first = await make_instance()
        await queue.enqueue_or_activate(first)
        second = await make_instance()
        await queue.enqueue_or_activate(second)

        await state_machine.transition(first.id, StateEvent.CANCEL)

        assert (await store.get_by_id(second.id)).state == InstanceState.QUEUED
        assert admitted == []
        live_slots = [i for i in await store.get_by_contact("+100") if i.is_active]
        assert [i.id for i in live_slots] == [live.id]

        # releasing the real slot still admits the next in line
        await state_machine.transition(live.id, StateEvent.CANCEL)
        assert admitted == [second.id]

    @pytest.mark.asyncio
    async def test_paused_queued_instance_does_not_hold_the_contact(self, queue, make_instance, state_machine):
        live = await make_instance(InstanceState.ACTIVE)
        parked = await make_instance()
        await queue.enqueue_or_activate(parked)
        await state_machine.transition(parked.id, StateEvent.PAUSE)
        await state_machine.transition(live.id, StateEvent.END_CONVERSATION)

        fresh = await make_instance()
        assert await queue.enqueue_or_activate(fresh) == InstanceState.CREATED
