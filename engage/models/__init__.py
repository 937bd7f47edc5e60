from engage.models.automation_preference import AutomationPreference
from engage.models.channel_instance import ChannelInstance
from engage.models.contact import Contact
from engage.models.inbound_receipt import InboundReceipt
from engage.models.message import Message
from engage.models.ticket import Ticket, TicketStatus

__all__ = [
    "AutomationPreference",
    "ChannelInstance",
    "Contact",
    "InboundReceipt",
    "Message",
    "Ticket",
    "TicketStatus",
]
