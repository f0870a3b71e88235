"""Input cleanup for free-text fields stored in the ledger (reason, reference)."""


def sanitize_user_input(text: str, max_length: int = 500) -> str:
    """
    Strip null bytes and control characters and cut to max_length.

    Ledger entries are immutable, so whatever passes here is kept forever.
    """
    if not text:
        return ""

    text = text.replace('\x00', '')
    text = ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')
    return text.strip()[:max_length]
