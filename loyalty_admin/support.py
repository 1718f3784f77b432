from typing import Any, Optional

from loyalty_admin.data_service import DataService
from loyalty_admin.models import TICKET_PRIORITIES, TICKET_STATUSES, utcnow
from loyalty_admin.realtime import Listener, Subscription

RESOLVED_STATUSES = ("resolved", "closed")


class SupportService:
    """Support tickets and their message threads."""

    def __init__(self, data: DataService):
        self.data = data

    def get_all_tickets(self) -> list[dict[str, Any]]:
        tickets = (
            self.data.table("support_tickets")
            .select("*", embed={"restaurant": ["name"]})
            .order("created_at", desc=True)
            .execute()
        )
        for ticket in tickets:
            restaurant = ticket.pop("restaurant", None)
            ticket["restaurant_name"] = restaurant["name"] if restaurant else None
        return tickets

    def get_ticket(self, ticket_id: str) -> Optional[dict[str, Any]]:
        return self.data.table("support_tickets").select().eq("id", ticket_id).maybe_single()

    def get_ticket_messages(self, ticket_id: str) -> list[dict[str, Any]]:
        return (
            self.data.table("support_messages")
            .select()
            .eq("ticket_id", ticket_id)
            .order("created_at")
            .execute()
        )

    def create_ticket(
        self,
        restaurant_id: str,
        subject: str,
        description: str,
        priority: str = "medium",
        category: str = "general",
        created_by: Optional[str] = None,
    ) -> dict[str, Any]:
        if priority not in TICKET_PRIORITIES:
            raise ValueError(f"unknown ticket priority: {priority}")
        if not subject.strip():
            raise ValueError("ticket subject is required")
        rows = self.data.table("support_tickets").insert(
            {
                "restaurant_id": restaurant_id,
                "subject": subject.strip(),
                "description": description,
                "priority": priority,
                "category": category,
                "created_by": created_by,
            }
        )
        return rows[0]

    def send_message(
        self,
        ticket_id: str,
        sender_type: str,
        sender_id: str,
        message: str,
    ) -> dict[str, Any]:
        if not message.strip():
            raise ValueError("message text is required")
        rows = self.data.table("support_messages").insert(
            {
                "ticket_id": ticket_id,
                "sender_type": sender_type,
                "sender_id": sender_id,
                "message": message,
            }
        )
        return rows[0]

    def update_ticket_status(self, ticket_id: str, status: str, updated_by: str) -> Optional[dict[str, Any]]:
        if status not in TICKET_STATUSES:
            raise ValueError(f"unknown ticket status: {status}")
        changes: dict[str, Any] = {"status": status}
        if status in RESOLVED_STATUSES:
            changes["resolved_at"] = utcnow()
            changes["resolved_by"] = updated_by
        rows = self.data.table("support_tickets").eq("id", ticket_id).update(changes)
        return rows[0] if rows else None

    def subscribe_to_tickets(self, callback: Listener) -> Subscription:
        return self.data.feed.subscribe("support_tickets", callback)

    def subscribe_to_messages(self, ticket_id: str, callback: Listener) -> Subscription:
        return self.data.feed.subscribe(
            "support_messages", callback, event="INSERT", match={"ticket_id": ticket_id}
        )
