"""
Button label processing.

Telegram renders emoji roughly twice as wide as letters, so label lengths
are measured in grapheme clusters with emoji clusters counting as two.
Truncation always happens on a cluster boundary.
"""

import unicodedata
from typing import List

ELLIPSIS = '...'

ZWJ = '\u200d'
KEYCAP = '\u20e3'
VS16 = '\ufe0f'

EMOJI_RANGES = (
    (0x1F000, 0x1FAFF),  # pictographs, emoticons, transport, flags, symbols
    (0x2600, 0x27BF),    # misc symbols and dingbats
    (0x2300, 0x23FF),    # misc technical (watch, hourglass...)
    (0x2B00, 0x2BFF),    # arrows, stars
    (0x1FC00, 0x1FFFF),
)


def _is_regional_indicator(char: str) -> bool:
    return 0x1F1E6 <= ord(char) <= 0x1F1FF


def _is_skin_tone(char: str) -> bool:
    return 0x1F3FB <= ord(char) <= 0x1F3FF


def _is_tag(char: str) -> bool:
    return 0xE0020 <= ord(char) <= 0xE007F


def _is_variation_selector(char: str) -> bool:
    code = ord(char)
    return 0xFE00 <= code <= 0xFE0F or 0xE0100 <= code <= 0xE01EF


def _extends(char: str) -> bool:
    return (unicodedata.category(char) in ('Mn', 'Me', 'Mc')
            or _is_variation_selector(char) or _is_skin_tone(char) or _is_tag(char))


def graphemes(text: str) -> List[str]:
    """Split text into user-perceived characters"""
    clusters = []
    i = 0
    n = len(text)
    while i < n:
        start = i
        char = text[i]
        i += 1
        if char == '\r' and i < n and text[i] == '\n':
            i += 1
        elif _is_regional_indicator(char):
            if i < n and _is_regional_indicator(text[i]):
                i += 1
        while i < n:
            if _extends(text[i]):
                i += 1
            elif text[i] == ZWJ:
                i += 1
                if i < n:
                    i += 1
            else:
                break
        clusters.append(text[start:i])
    return clusters


def is_emoji(cluster: str) -> bool:
    if VS16 in cluster or KEYCAP in cluster:
        return True
    for char in cluster:
        code = ord(char)
        if any(low <= code <= high for low, high in EMOJI_RANGES):
            return True
    return False


def cluster_width(cluster: str) -> int:
    return 2 if is_emoji(cluster) else 1


def display_width(text: str) -> int:
    return sum(cluster_width(c) for c in graphemes(text))


def clean_text(text: str) -> str:
    """Drop control characters and collapse whitespace"""
    text = ''.join(c for c in text if c.isspace() or unicodedata.category(c) != 'Cc')
    return ' '.join(text.split())


def truncate(text: str, max_length: int) -> str:
    """Shorten text to max_length display units, ending with an ellipsis when cut"""
    if display_width(text) <= max_length:
        return text
    if max_length <= len(ELLIPSIS):
        return ELLIPSIS[:max(max_length, 0)]

    budget = max_length - len(ELLIPSIS)
    kept = []
    used = 0
    for cluster in graphemes(text):
        width = cluster_width(cluster)
        if used + width > budget:
            break
        kept.append(cluster)
        used += width
    return ''.join(kept).rstrip() + ELLIPSIS


def button_text(text: str, max_length: int) -> str:
    return truncate(clean_text(text), max_length)


def server_button_text(name: str, icon: str, max_length: int) -> str:
    if icon:
        return button_text(f"{icon} {name}", max_length)
    return button_text(name, max_length)
