from typing import Optional
from enum import Enum
from pydantic import BaseModel

JSON_FENCE = "```json"
GENERIC_FENCE = "```"


class PayloadKind(str, Enum):
    """Where the JSON payload was found in the model output"""
    RAW = "raw"
    JSON_FENCE = "json_fence"
    GENERIC_FENCE = "generic_fence"
    UNTERMINATED_FENCE = "unterminated_fence"


class ExtractedPayload(BaseModel):
    """Candidate JSON text and how it was located"""
    text: str
    kind: PayloadKind


def _fenced_body(content: str, fence: str) -> Optional[str]:
    start = content.find(fence)
    if start < 0:
        return None
    body_start = start + len(fence)
    end = content.find(GENERIC_FENCE, body_start)
    if end < 0:
        return None
    return content[body_start:end].strip()


def extract_json_payload(content: str) -> ExtractedPayload:
    """Pull the JSON body out of a model response

    A ```json fence wins over a generic fence; anything else is returned raw.
    An unterminated fence never raises: the text after the opening fence is
    returned and left for the parser to reject.
    """

    body = _fenced_body(content, JSON_FENCE)
    if body is not None:
        return ExtractedPayload(text=body, kind=PayloadKind.JSON_FENCE)

    if JSON_FENCE not in content:
        body = _fenced_body(content, GENERIC_FENCE)
        if body is not None:
            # Drop a language tag on the opening fence line
            first_line, _, rest = body.partition("\n")
            if rest and first_line and not first_line.lstrip().startswith(("{", "[")):
                body = rest.strip()
            return ExtractedPayload(text=body, kind=PayloadKind.GENERIC_FENCE)

    start = content.find(GENERIC_FENCE)
    if start >= 0:
        opening = JSON_FENCE if content.startswith(JSON_FENCE, start) else GENERIC_FENCE
        return ExtractedPayload(
            text=content[start + len(opening):].strip(),
            kind=PayloadKind.UNTERMINATED_FENCE
        )

    return ExtractedPayload(text=content.strip(), kind=PayloadKind.RAW)
