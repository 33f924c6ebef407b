"""Direct messaging domain exports."""

from .models import Conversation, ConversationKey, Message
from .notifications import NewMessageNotification, NotifierState, UnreadNotifier
from .store import InMemoryMessagingStore, MessagingStore
from .synchronizer import ConversationSynchronizer
from .triggers import IntervalPoller, PgNotifyTrigger, RefreshTrigger

__all__ = [
	"Conversation",
	"ConversationKey",
	"ConversationSynchronizer",
	"InMemoryMessagingStore",
	"IntervalPoller",
	"Message",
	"MessagingStore",
	"NewMessageNotification",
	"NotifierState",
	"PgNotifyTrigger",
	"RefreshTrigger",
	"UnreadNotifier",
]
