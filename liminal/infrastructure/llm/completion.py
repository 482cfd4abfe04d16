from typing import Any, Optional, Protocol, runtime_checkable

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from liminal.domain.models.errors import AuthFailure, LiminalError, NetworkFailure

logger = structlog.get_logger(__name__)

AUTH_STATUS_CODES = (401, 403)
AUTH_ERROR_MARKERS = ("Authentication", "PermissionDenied", "Unauthorized")


@runtime_checkable
class TextCompletion(Protocol):
    """Anything that turns a prompt into text

    Used for both the recognition model and the response model.
    """

    model_name: str

    async def complete(self, prompt: str) -> str:
        ...


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_provider_error(exc: Exception, stage: str = "requesting") -> LiminalError:
    """Map a provider exception onto AuthFailure or NetworkFailure"""

    if isinstance(exc, LiminalError):
        return exc

    status = _status_code(exc)
    name = type(exc).__name__
    if status in AUTH_STATUS_CODES or any(marker in name for marker in AUTH_ERROR_MARKERS):
        return AuthFailure(stage, f"{name}: {exc}")
    return NetworkFailure(stage, f"{name}: {exc}", status_code=status)


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    # Content blocks from multi-part responses
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class ChatModelCompletion:
    """TextCompletion backed by a LangChain chat model"""

    def __init__(self, chat_model: BaseChatModel, model_name: Optional[str] = None, system_prompt: Optional[str] = None):
        self.chat_model = chat_model
        self.model_name = model_name or getattr(chat_model, "model_name", None) or type(chat_model).__name__
        self.system_prompt = system_prompt

    async def complete(self, prompt: str) -> str:
        messages = []
        if self.system_prompt:
            messages.append(SystemMessage(content=self.system_prompt))
        messages.append(HumanMessage(content=prompt))

        try:
            response = await self.chat_model.ainvoke(messages)
        except Exception as exc:
            error = classify_provider_error(exc)
            logger.warning("Chat model call failed", model=self.model_name, error=error.to_dict())
            raise error from exc

        return _message_text(response.content)
