from typing import List, Optional

from commerce_agent.domain.models.commands import TruncateMessages
from commerce_agent.domain.models.conversation_state import ConversationMessage, ConversationState


class ContextWindow:
    """Bounds what the model sees and how much history is kept"""

    def __init__(self, window_messages: int = 20, history_limit: int = 100):
        self.window_messages = window_messages
        self.history_limit = history_limit

    def model_messages(self, state: ConversationState) -> List[ConversationMessage]:
        messages = state.messages[-self.window_messages:]
        # Never start the window on an orphaned tool result
        while messages and messages[0].role == "tool":
            messages = messages[1:]
        return messages

    def truncation(self, state: ConversationState, pending: int = 0) -> Optional[TruncateMessages]:
        """TRUNCATE_MESSAGES once history (plus pending appends) exceeds the limit"""

        if len(state.messages) + pending > self.history_limit:
            return TruncateMessages(keep_last=self.history_limit)
        return None
