"""ORM models exposed for metadata discovery."""
from habitpilot.db.models.agent_action_log import AgentActionLog
from habitpilot.db.models.chat_message import ChatMessage
from habitpilot.db.models.conversation_state import ConversationState
from habitpilot.db.models.job_record import JobRecord
from habitpilot.db.models.pending_action import PendingAction
from habitpilot.db.models.scheduled_message import ScheduledMessage
from habitpilot.db.models.user import User

__all__ = [
    "AgentActionLog",
    "ChatMessage",
    "ConversationState",
    "JobRecord",
    "PendingAction",
    "ScheduledMessage",
    "User",
]
