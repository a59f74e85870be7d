import re
from decimal import Decimal, InvalidOperation
from enum import Enum

from app.errors import MissingRequiredFact

FACT_ALIASES = {
    "product_name": ("product name", "name", "product", "title"),
    "material": ("material", "materials", "made of"),
    "price": ("price", "regular price", "cost", "price etb"),
    "localized_name": ("localized name", "local name", "amharic name", "amharic"),
    "focus_keywords": ("focus keywords", "keywords", "keyword", "focus keyword"),
}

_ALIAS_TO_FACT = {alias: fact for fact, aliases in FACT_ALIASES.items() for alias in aliases}
_KEY_RE = re.compile(
    r"(?<![\w])(?P<key>"
    + "|".join(re.escape(a) for a in sorted(_ALIAS_TO_FACT, key=len, reverse=True))
    + r")\s*[:=]",
    re.IGNORECASE,
)
_NUMBER_RE = re.compile(r"-?\d[\d,]*(?:\.\d+)?")


class Intent(str, Enum):
    REOPTIMIZE = "reoptimize"
    CREATE = "create"
    DRAFT = "draft"
    NEW_SESSION = "new_session"


INTENT_PHRASES = {
    Intent.REOPTIMIZE: {"reoptimize", "re optimize", "ai optimize now", "optimize again", "regenerate"},
    Intent.CREATE: {"create product", "create", "publish", "save changes", "create it", "yes create it"},
    Intent.DRAFT: {"save as draft", "draft", "save draft"},
    Intent.NEW_SESSION: {"/start", "/new", "/reset", "new session", "new product", "start over"},
}


def _normalize(text: str) -> str:
    text = text.strip().lower()
    if text.startswith("/"):
        return text.split()[0].split("@")[0]
    text = text.replace("-", "")
    text = re.sub(r"[^a-z0-9 ]+", " ", text)
    return " ".join(text.split())


def detect_intent(text: str | None) -> Intent | None:
    if not text:
        return None
    normalized = _normalize(text)
    for intent, phrases in INTENT_PHRASES.items():
        if normalized in phrases:
            return intent
    return None


def parse_price(value: str) -> Decimal:
    """Read a price such as ``5000``, ``5,000 ETB`` or ``1299.50``."""
    match = _NUMBER_RE.search(value)
    if not match:
        raise MissingRequiredFact("price", f"I couldn't read '{value}' as a price.")
    try:
        amount = Decimal(match.group(0).replace(",", ""))
    except InvalidOperation as exc:
        raise MissingRequiredFact("price", f"I couldn't read '{value}' as a price.") from exc
    if amount < 0:
        raise MissingRequiredFact("price", "The price can't be negative.")
    return amount


def extract_facts(text: str | None, awaiting: str | None = None) -> dict[str, str]:
    """Extract raw fact strings from a chat message.

    ``key: value`` pairs are recognized anywhere in the text (one per line or
    separated by commas). A message without any key answers the fact the bot
    asked for last.
    """
    if not text or not text.strip():
        return {}
    matches = list(_KEY_RE.finditer(text))
    facts: dict[str, str] = {}
    if matches:
        for index, match in enumerate(matches):
            end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
            value = text[match.end():end].strip().strip(",;").strip()
            if value:
                facts[_ALIAS_TO_FACT[match.group("key").lower()]] = value
    elif awaiting:
        facts[awaiting] = text.strip()
    return facts
