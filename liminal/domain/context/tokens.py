from typing import Optional


def estimate_tokens(text: Optional[str]) -> int:
    """Whitespace word count; a cheap stand-in for a tokenizer"""
    if not text:
        return 0
    return len(text.split())
