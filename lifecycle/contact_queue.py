"""
Contact Queue — at most one live instance per contact, strict FIFO behind it.

A new instance either takes the contact's free slot (stays CREATED, caller
activates it) or parks in QUEUED. When the live instance reaches a terminal
state, only the single oldest QUEUED instance is admitted back to CREATED.
"""
from __future__ import annotations

import structlog
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from lifecycle.errors import QueueInvariantViolation
from lifecycle.state_machine import InstanceStateMachine
from models.schemas import ConversationInstance, InstanceState, StateEvent

if TYPE_CHECKING:
    from database.store_base import BaseInstanceStore

logger = structlog.get_logger()

AdmittedCallback = Callable[[ConversationInstance], Awaitable[Any]]


class ContactQueue:

    def __init__(
        self,
        store: "BaseInstanceStore",
        state_machine: InstanceStateMachine,
        on_admitted: Optional[AdmittedCallback] = None,
    ):
        self.store = store
        self.state_machine = state_machine
        self._on_admitted = on_admitted

    async def enqueue_or_activate(self, instance: ConversationInstance) -> InstanceState:
        """
        Decide whether a freshly created instance may proceed.

        Returns InstanceState.QUEUED when another instance holds the contact,
        InstanceState.CREATED when the slot is free (instance left untouched).
        Raises QueueInvariantViolation if the queueing transition is rejected.
        """
        active = await self.store.get_active_for_contact(instance.target_contact, exclude_id=instance.id)
        if active is None:
            return InstanceState.CREATED

        result = await self.state_machine.transition(instance.id, StateEvent.CONTACT_HAS_ACTIVE_INSTANCE)
        if not result:
            raise QueueInvariantViolation(
                f"Could not queue instance {instance.id} behind {active.id} "
                f"for contact {instance.target_contact}: {result.error}"
            )
        logger.info("instance_queued",
                    instance_id=instance.id,
                    contact=instance.target_contact,
                    blocking_instance=active.id)
        return InstanceState.QUEUED

    async def get_queue_for_contact(self, contact: str) -> list[ConversationInstance]:
        """QUEUED instances for the contact, oldest first."""
        queued = [
            i for i in await self.store.get_by_contact(contact)
            if i.state == InstanceState.QUEUED
        ]
        return sorted(queued, key=lambda i: i.created_at)

    async def on_instance_terminal(self, instance_id: str) -> Optional[ConversationInstance]:
        """
        Terminal hook: admit the oldest QUEUED instance for the same contact.

        Nothing is admitted while another instance still holds the contact,
        e.g. when the instance that finished was itself waiting in the queue.
        """
        finished = await self.store.get_by_id(instance_id)
        if finished is None:
            return None

        holder = await self.store.get_active_for_contact(finished.target_contact)
        if holder is not None:
            logger.debug("dequeue_skipped_contact_busy", instance_id=instance_id, holder=holder.id)
            return None

        queue = await self.get_queue_for_contact(finished.target_contact)
        if not queue:
            return None

        head = queue[0]
        result = await self.state_machine.transition(head.id, StateEvent.PRIOR_INSTANCE_TERMINAL)
        if not result:
            logger.error("dequeue_failed", instance_id=head.id, error=str(result.error))
            return None

        logger.info("instance_dequeued",
                    instance_id=head.id,
                    contact=finished.target_contact,
                    after=instance_id,
                    still_queued=len(queue) - 1)
        if self._on_admitted is not None:
            await self._on_admitted(result.instance)
        return result.instance
