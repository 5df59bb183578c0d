"""
Merchant extraction from provider narration.

Bank narrations tend to arrive upper-cased with channel boilerplate
("POS PURCHASE JUMIA LAGOS"); mobile-money notes are free text typed by the
payer ("Lunch at KFC Accra Mall"). Both are reduced to one display token.
"""

import re

UNKNOWN_MERCHANT = "Unknown Merchant"
MAX_MERCHANT_LENGTH = 50

# lower-case token -> display name
KNOWN_MERCHANTS: dict[str, str] = {
    "uber": "Uber",
    "bolt": "Bolt",
    "lyft": "Lyft",
    "taxi": "Taxi",
    "kfc": "KFC",
    "mcdonald": "McDonald's",
    "mcdonalds": "McDonald's",
    "pizza": "Pizza",
    "burger": "Burger",
    "mtn": "MTN",
    "vodafone": "Vodafone",
    "airteltigo": "AirtelTigo",
    "airtel": "Airtel",
    "ecg": "ECG",
    "gwcl": "GWCL",
    "ghana water": "Ghana Water",
    "shoprite": "Shoprite",
    "melcom": "Melcom",
    "palace": "Palace",
    "netflix": "Netflix",
    "spotify": "Spotify",
    "youtube": "YouTube",
    "jumia": "Jumia",
}

BOILERPLATE_PHRASES = (
    "pos purchase",
    "web purchase",
    "debit card",
    "card payment",
    "mobile money",
    "payment to",
    "payment from",
    "payment for",
    "transfer to",
    "transfer from",
    "money transfer",
    "momo",
    "nip",
    "pos",
    "trf",
    "ref",
    "txn",
    "trxn",
)

STOPWORDS = frozenset({
    "payment", "transaction", "transfer", "from", "to", "for", "at", "the",
    "and", "with", "ride", "bill", "purchase", "service", "debit", "credit",
    "pos", "web", "card", "momo", "ref", "txn", "trxn", "nip", "trf",
})

NOTE_STOPWORDS = STOPWORDS | {"food", "grocery"}

LOCATION_WORDS = frozenset({
    "mall", "street", "road", "avenue", "center", "centre", "plaza",
    "market", "station", "terminal",
})

_PHRASE_END = r"(?:\s+for|\s+at|\s+ride|\s+bill|$)"
_KNOWN_CONTEXT_PATTERNS = (
    re.compile(r"payment\s+to\s+([a-z][a-z\s&'-]*?)" + _PHRASE_END, re.IGNORECASE),
    re.compile(r"from\s+([a-z][a-z\s&'-]*?)" + _PHRASE_END, re.IGNORECASE),
)
_PHRASE_PATTERNS = _KNOWN_CONTEXT_PATTERNS + (
    re.compile(r"\bto\s+([a-z][a-z\s&'-]*?)" + _PHRASE_END, re.IGNORECASE),
    re.compile(r"\bat\s+([a-z][a-z\s&'-]*?)(?:\s+for|\s+ride|\s+bill|$)", re.IGNORECASE),
)
_BOILERPLATE_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(phrase) for phrase in BOILERPLATE_PHRASES) + r")\b",
    re.IGNORECASE,
)
_NOISE_RE = re.compile(r"[^\w\s&'-]|\b\w*\d\w*\b")
_WHITESPACE_RE = re.compile(r"\s+")


def _titleize(text: str) -> str:
    words = []
    for word in text.split():
        known = KNOWN_MERCHANTS.get(word.lower())
        words.append(known or word[:1].upper() + word[1:].lower())
    return " ".join(words)


def _cap(text: str) -> str:
    if len(text) <= MAX_MERCHANT_LENGTH:
        return text
    return text[:MAX_MERCHANT_LENGTH].rsplit(" ", 1)[0] or text[:MAX_MERCHANT_LENGTH]


def clean_narration(text: str | None) -> str:
    """Strip channel boilerplate, reference numbers and punctuation, then title-case."""
    if not text:
        return ""
    stripped = _BOILERPLATE_RE.sub(" ", text)
    stripped = _NOISE_RE.sub(" ", stripped)
    stripped = _WHITESPACE_RE.sub(" ", stripped).strip(" -&'")
    return _cap(_titleize(stripped))


def _find_known_merchant(text: str) -> str | None:
    lowered = text.lower()
    tokens = re.findall(r"[a-z']+", lowered)
    for token in tokens:
        if token in KNOWN_MERCHANTS:
            for pattern in _KNOWN_CONTEXT_PATTERNS:
                match = pattern.search(text)
                if match:
                    candidate = match.group(1).strip()
                    if token in candidate.lower() and len(candidate) > len(token):
                        return _cap(_titleize(candidate))
            return KNOWN_MERCHANTS[token]
    for phrase, display in KNOWN_MERCHANTS.items():
        if " " in phrase and phrase in lowered:
            return display
    return None


def _first_candidate_word(text: str, stopwords: frozenset[str], *, require_capital: bool) -> str | None:
    for word in text.split():
        word = word.strip(".,;:!?()[]\"'")
        if len(word) <= 2 or not word.isalpha():
            continue
        if require_capital and not word[0].isupper():
            continue
        lowered = word.lower()
        if lowered in stopwords or lowered in LOCATION_WORDS:
            continue
        return _titleize(word)
    return None


def extract_merchant_name(description: str | None, payee_note: str | None = None) -> str:
    desc = (description or "").strip()
    note = (payee_note or "").strip()
    full_text = f"{desc} {note}".strip()

    if not full_text or (desc == "Payment" and note == "Transaction"):
        return UNKNOWN_MERCHANT

    known = _find_known_merchant(full_text)
    if known:
        return known

    for pattern in _PHRASE_PATTERNS:
        match = pattern.search(full_text)
        if match:
            candidate = clean_narration(match.group(1))
            if 2 < len(candidate) < MAX_MERCHANT_LENGTH:
                return candidate

    word = _first_candidate_word(desc, STOPWORDS, require_capital=True)
    if word:
        return word

    if note:
        word = _first_candidate_word(note.split()[0], NOTE_STOPWORDS, require_capital=True)
        if word:
            return word

    cleaned = clean_narration(full_text)
    return cleaned or UNKNOWN_MERCHANT
