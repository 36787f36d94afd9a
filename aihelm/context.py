"""System prompt construction for response generation."""

import threading
from dataclasses import dataclass
from typing import Dict, Optional

BASE_CONTEXT = """You are an AI assistant powered by AI Helm, a universal AI interface that routes prompts to the best model for each task. You provide helpful, accurate, and well-structured responses.

Guidelines:
- Be clear and direct. Avoid unnecessary filler or disclaimers.
- Match the user's tone and formality level.
- If you're unsure about something, say so rather than guessing.
- For code, use proper formatting with syntax highlighting.
- For complex topics, break your response into clear sections.
- Be conversational but professional."""


@dataclass(frozen=True)
class UserProgress:
    """Usage history used to personalize the system prompt."""

    total_messages: int = 0
    average_prompt_quality: float = 0.0


class UserProgressTracker:
    """In-memory per-user message counts and running prompt quality.

    Only authenticated users are tracked; history resets on restart.
    """

    def __init__(self) -> None:
        self._progress: Dict[str, UserProgress] = {}
        self._lock = threading.Lock()

    def get(self, user_id: Optional[str]) -> Optional[UserProgress]:
        if user_id is None:
            return None
        with self._lock:
            return self._progress.get(user_id)

    def record(self, user_id: Optional[str], prompt_quality: int) -> Optional[UserProgress]:
        """Count one completed message for ``user_id``."""
        if user_id is None:
            return None
        with self._lock:
            previous = self._progress.get(user_id, UserProgress())
            total = previous.total_messages + 1
            average = (
                previous.average_prompt_quality * previous.total_messages + prompt_quality
            ) / total
            updated = UserProgress(total_messages=total, average_prompt_quality=average)
            self._progress[user_id] = updated
            return updated


def build_user_context(progress: Optional[UserProgress]) -> Optional[str]:
    if progress is None:
        return None

    parts = []
    if progress.total_messages < 5:
        parts.append(
            "This user is new to AI. Keep explanations simple and include examples where helpful."
        )
    elif progress.total_messages < 30:
        parts.append("This user has some AI experience; you can be moderately technical.")

    if 0 < progress.average_prompt_quality < 50:
        parts.append(
            "The user's prompts tend to be broad. Ask clarifying questions if "
            "their request is ambiguous."
        )

    return " ".join(parts) if parts else None


def build_system_context(
    preset_prompt: Optional[str] = None, progress: Optional[UserProgress] = None
) -> str:
    """Assemble the system prompt for a generation call.

    A preset prompt replaces the base context rather than adding to it.
    User hints are appended when there is history to draw on.
    """
    sections = [preset_prompt if preset_prompt else BASE_CONTEXT]
    user_context = build_user_context(progress)
    if user_context:
        sections.append("User context: {}".format(user_context))
    return "\n\n".join(sections)
