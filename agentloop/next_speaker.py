"""Next-speaker inference.

After a turn that requested no tools, decide whether the model still owes
a message (e.g. it said "next, I will..." and stopped) or whether it is the
user's turn. Any failure or ambiguous answer means "user".
"""

import logging
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from .config import DEFAULT_FLASH_MODEL
from .errors import UnauthorizedError
from .plugins.model_provider.types import CancelToken, Message, Role

if TYPE_CHECKING:
    from .chat_session import ChatSession
    from .orchestrator import ConversationOrchestrator

logger = logging.getLogger(__name__)


CHECK_PROMPT = """Analyze *only* the content and structure of your immediately preceding response (your last turn in the conversation history). Based *strictly* on that response, determine who should logically speak next: the 'user' or the 'model' (you).
**Decision Rules (apply in order):**
1.  **Model Continues:** If your last response explicitly states an immediate next action *you* intend to take (e.g., "Next, I will...", "Now I'll process...", "Moving on to analyze...", indicates an intended tool call that didn't execute), OR if the response seems clearly incomplete (cut off mid-thought without a natural conclusion), then the **'model'** should speak next.
2.  **Question to User:** If your last response ends with a direct question specifically addressed *to the user*, then the **'user'** should speak next.
3.  **Waiting for User:** If your last response completed a thought, statement, or task *and* does not meet the criteria for Rule 1 (Model Continues) or Rule 2 (Question to User), it implies a pause expecting user input or reaction. In this case, the **'user'** should speak next.
**Output Format:**
Respond *only* in JSON format according to the following schema. Do not include any text outside the JSON structure.
```json
{
  "type": "object",
  "properties": {
    "reasoning": {
        "type": "string",
        "description": "Brief explanation justifying the 'next_speaker' choice based *strictly* on the applicable rule and the content/structure of the preceding turn."
    },
    "next_speaker": {
      "type": "string",
      "enum": ["user", "model"],
      "description": "Who should speak next based *only* on the preceding turn and the decision rules."
    }
  },
  "required": ["next_speaker", "reasoning"]
}
```
"""

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "reasoning": {
            "type": "string",
            "description": "Brief explanation justifying the 'next_speaker' choice based *strictly* on the applicable rule and the content/structure of the preceding turn.",
        },
        "next_speaker": {
            "type": "string",
            "enum": ["user", "model"],
            "description": "Who should speak next based *only* on the preceding turn and the decision rules.",
        },
    },
    "required": ["reasoning", "next_speaker"],
}


def strip_tool_exchanges(history: List[Message]) -> List[Message]:
    """History without tool-response continuations or the calls they answer.

    Model messages keep their non-call parts; a message left empty is
    dropped and adjacent messages from the same role are merged.
    """
    stripped: List[Message] = []
    for message in history:
        if message.is_function_response:
            continue
        parts = [p for p in message.parts if p.function_call is None]
        if not parts:
            continue
        if stripped and stripped[-1].role == message.role:
            stripped[-1] = Message(role=message.role, parts=stripped[-1].parts + parts)
        else:
            stripped.append(Message(role=message.role, parts=parts))
    return stripped


def check_next_speaker(
    chat: 'ChatSession',
    orchestrator: 'ConversationOrchestrator',
    cancel_token: Optional[CancelToken] = None,
) -> Optional[Dict[str, Any]]:
    """Return ``{"reasoning", "next_speaker"}`` or None when undecided.

    Raises:
        UnauthorizedError: Auth failures are never downgraded to "undecided".
    """
    curated = chat.get_history(curated=True)
    if not curated:
        return None
    comprehensive = chat.get_history()
    if not comprehensive:
        return None

    last = comprehensive[-1]
    if last.is_function_response:
        return {
            "reasoning": "The last message was a function response, so the model should speak next.",
            "next_speaker": "model",
        }
    if last.role == Role.MODEL and not last.parts:
        return {
            "reasoning": "The last message was a filler model message with no content (nothing for user to act on), model should speak next.",
            "next_speaker": "model",
        }

    if curated[-1].role != Role.MODEL:
        return None

    history = strip_tool_exchanges(curated)
    if not history or history[-1].role != Role.MODEL:
        return None

    contents = history + [Message.from_text(Role.USER, CHECK_PROMPT)]
    try:
        parsed = orchestrator.generate_json(
            contents, RESPONSE_SCHEMA, cancel_token=cancel_token, model=DEFAULT_FLASH_MODEL
        )
    except UnauthorizedError:
        raise
    except Exception as exc:
        logger.warning(f"Failed to talk to the model for the next speaker check: {exc}")
        return None

    if isinstance(parsed, dict) and parsed.get("next_speaker") in ("user", "model"):
        return parsed
    return None
