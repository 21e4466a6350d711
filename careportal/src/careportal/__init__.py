"""Message and appointment coordination engine for the care portal."""

from .appointments import AppointmentStore
from .config import PortalConfig, load_config_from_env
from .contacts import ContactDirectory
from .conversations import ConversationStore
from .hub import Subscription, SubscriptionHub
from .messaging import MessagingSession
from .models import Actor, Appointment, Contact, ConversationKey, Message, Profile
from .persistence import InMemoryPersistence
from .read_tracker import ReadTracker
from .server import create_app, main
from .subscriptions import PushSubscriptionManager

__all__ = [
    "Actor",
    "Appointment",
    "AppointmentStore",
    "Contact",
    "ContactDirectory",
    "ConversationKey",
    "ConversationStore",
    "InMemoryPersistence",
    "Message",
    "MessagingSession",
    "PortalConfig",
    "Profile",
    "PushSubscriptionManager",
    "ReadTracker",
    "Subscription",
    "SubscriptionHub",
    "create_app",
    "load_config_from_env",
    "main",
]
