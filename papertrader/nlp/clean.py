import re
from typing import List

CASHTAG_RE = re.compile(r'\$([A-Za-z]{1,5}(?:-USD)?)(?![A-Za-z])')

def normalize_post(t: str) -> str:
    # Remove URLs
    t = re.sub(r'https?://\S+', '', t)
    # Remove excessive whitespace
    t = re.sub(r'\s+', ' ', t)
    t = t.strip()
    return t

def extract_cashtags(t: str) -> List[str]:
    """Upper-cased $TICKER tokens in order of first appearance."""
    seen = []
    for tag in CASHTAG_RE.findall(t):
        tag = tag.upper()
        if tag not in seen:
            seen.append(tag)
    return seen

def truncate_text(t: str, max_len: int = 200) -> str:
    """Cut at a word boundary when one is close to the limit."""
    if not t or len(t) <= max_len:
        return t
    cut = t[:max_len]
    last_space = cut.rfind(' ')
    if last_space > max_len * 0.8:
        return cut[:last_space] + '...'
    return cut + '...'
