import re
from typing import Dict, List, Tuple

import structlog
from diff_match_patch import diff_match_patch

logger = structlog.get_logger(__name__)

# Tokens never cross blocks, so change text is cut at blank lines.
_BLOCK_BREAK = re.compile(r"(\n[ \t]*\n\s*)")


def diff_texts(original_text: str, modified_text: str) -> str:
    """
    Compares two plain texts and returns CriticMarkup describing the edits.
    Uses Word-Level diffing so changes land on whole words.
    An adjacent delete + insert becomes a substitution.
    """
    dmp = diff_match_patch()

    # 1. Word-Level Tokenization & Encoding
    chars1, chars2, token_array = _words_to_chars(original_text, modified_text)

    # 2. Compute Diff on the Encoded Strings
    diffs = dmp.diff_main(chars1, chars2, False)

    # 3. Semantic Cleanup
    dmp.diff_cleanupSemantic(diffs)

    # 4. Decode back to Text
    dmp.diff_charsToLines(diffs, token_array)

    parts: List[str] = []
    pending_delete = ""
    changes = 0

    for op, text in diffs:
        if op == -1:  # Delete
            # Defer deletion to check for immediate insertion (Substitution)
            pending_delete += text
        elif op == 1:  # Insert
            if pending_delete:
                parts.append(_substitution(pending_delete, text))
                pending_delete = ""
            else:
                parts.append(_wrap("{++", text, "++}"))
            changes += 1
        else:  # Equal
            if pending_delete:
                parts.append(_wrap("{--", pending_delete, "--}"))
                pending_delete = ""
                changes += 1
            parts.append(text)

    # Flush trailing delete
    if pending_delete:
        parts.append(_wrap("{--", pending_delete, "--}"))
        changes += 1

    logger.info("Compared texts", changes=changes)
    return "".join(parts)


def _wrap(opening: str, text: str, closing: str) -> str:
    """Wraps each block-sized piece of `text` in its own token, keeping blank lines outside."""
    pieces = []
    for piece in _BLOCK_BREAK.split(text):
        if not piece:
            continue
        if _BLOCK_BREAK.fullmatch(piece):
            pieces.append(piece)
        else:
            pieces.append(f"{opening}{piece}{closing}")
    return "".join(pieces)


def _substitution(old: str, new: str) -> str:
    if _BLOCK_BREAK.search(old) or _BLOCK_BREAK.search(new):
        # A substitution token cannot span blocks: fall back to a deletion and an insertion.
        return _wrap("{--", old, "--}") + _wrap("{++", new, "++}")
    return f"{{~~{old}~>{new}~~}}"


def _words_to_chars(text1: str, text2: str) -> Tuple[str, str, List[str]]:
    """
    Splits text into words/tokens and encodes them as unique Unicode characters.
    """
    token_array: List[str] = []
    token_hash: Dict[str, int] = {}
    split_pattern = r"(\s+|\w+|[^\w\s])"

    def encode_text(text: str) -> str:
        tokens = [t for t in re.split(split_pattern, text) if t]
        encoded_chars = []
        for token in tokens:
            if token not in token_hash:
                token_hash[token] = len(token_array)
                token_array.append(token)
            encoded_chars.append(chr(token_hash[token]))
        return "".join(encoded_chars)

    return encode_text(text1), encode_text(text2), token_array
