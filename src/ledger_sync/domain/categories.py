import re
from dataclasses import dataclass, field
from decimal import Decimal

from ledger_sync.models import TransactionType

UNCATEGORIZED_LABEL = "uncategorized"
UNCATEGORIZED_NAME = "Uncategorized"
UNCATEGORIZED_ICON = "help-circle"
DEFAULT_ICON = "circle"


@dataclass(frozen=True)
class AmountProfile:
    minimum: float
    maximum: float
    typical: tuple[float, ...]


@dataclass(frozen=True)
class CategoryDefinition:
    label: str
    display_name: str
    type: TransactionType
    keywords: tuple[str, ...]
    merchant_patterns: tuple[re.Pattern[str], ...] = ()
    context_clues: tuple[str, ...] = ()
    amount_profile: AmountProfile | None = None
    icon: str = DEFAULT_ICON
    aliases: tuple[str, ...] = field(default=())


def _patterns(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(source, re.IGNORECASE) for source in sources)


# Order matters: earlier entries win ties, so income labels come first.
CATEGORY_DEFINITIONS: tuple[CategoryDefinition, ...] = (
    CategoryDefinition(
        label="salary",
        display_name="Salary",
        type=TransactionType.INCOME,
        keywords=("salary", "wages", "payroll", "employment", "monthly pay", "monthly payment"),
        merchant_patterns=_patterns(r"salary", r"wages", r"payroll", r"monthly.*pay"),
        amount_profile=AmountProfile(500, 10000, (1000, 2000, 3000, 5000)),
        icon="briefcase",
    ),
    CategoryDefinition(
        label="business_income",
        display_name="Business Income",
        type=TransactionType.INCOME,
        keywords=("business", "sale", "revenue", "client", "customer", "invoice"),
        merchant_patterns=_patterns(r"business", r"\bsales?\b", r"client", r"invoice"),
        icon="trending-up",
    ),
    CategoryDefinition(
        label="transfer_received",
        display_name="Money Received",
        type=TransactionType.INCOME,
        keywords=("received", "sent to you", "deposit", "refund", "cashback"),
        merchant_patterns=_patterns(r"received", r"deposit", r"refund"),
        icon="download",
        aliases=("Transfer Received",),
    ),
    CategoryDefinition(
        label="investment_income",
        display_name="Investment Returns",
        type=TransactionType.INCOME,
        keywords=("dividend", "interest", "investment", "profit", "yield"),
        merchant_patterns=_patterns(r"dividend", r"interest", r"investment"),
        icon="pie-chart",
        aliases=("Investment Income",),
    ),
    CategoryDefinition(
        label="freelance",
        display_name="Freelance Work",
        type=TransactionType.INCOME,
        keywords=("freelance", "contract", "gig", "consultation"),
        merchant_patterns=_patterns(r"freelance", r"contract", r"\bgig\b"),
        icon="user",
        aliases=("Freelance",),
    ),
    CategoryDefinition(
        label="food_dining",
        display_name="Food & Dining",
        type=TransactionType.EXPENSE,
        keywords=(
            "restaurant", "food", "dining", "breakfast", "lunch", "dinner", "cafe",
            "kfc", "mcdonald", "pizza", "burger", "chop bar",
        ),
        merchant_patterns=_patterns(
            r"restaurant", r"cafe", r"\bbar\b", r"food", r"kitchen", r"eatery",
            r"kfc", r"mcdonald", r"pizza", r"burger",
        ),
        context_clues=("breakfast", "lunch", "dinner", "meal", "eat", "drink"),
        amount_profile=AmountProfile(5, 200, (10, 15, 25, 35, 50)),
        icon="restaurant",
        aliases=("Food Dining",),
    ),
    CategoryDefinition(
        label="transportation",
        display_name="Transport",
        type=TransactionType.EXPENSE,
        keywords=("uber", "bolt", "taxi", "trotro", "fuel", "petrol", "transport", "bus", "metro", "kantanka"),
        merchant_patterns=_patterns(
            r"uber", r"bolt", r"taxi", r"trotro", r"fuel", r"petrol", r"transport", r"kantanka",
        ),
        context_clues=("trip", "ride", "journey", "travel", "commute"),
        amount_profile=AmountProfile(2, 100, (5, 10, 15, 20, 30)),
        icon="car",
        aliases=("Transportation",),
    ),
    CategoryDefinition(
        label="utilities",
        display_name="Utilities",
        type=TransactionType.EXPENSE,
        keywords=(
            "electricity", "water", "ecg", "gwcl", "internet", "airtime", "data bundle",
            "ghana water company", "airteltigo", "prepaid",
        ),
        merchant_patterns=_patterns(
            r"\becg\b", r"gwcl", r"electricity", r"water", r"internet", r"airtime",
            r"\bdata\b", r"ghana water", r"airteltigo",
        ),
        context_clues=("bill", "monthly", "service", "connection"),
        amount_profile=AmountProfile(10, 500, (20, 50, 100, 150)),
        icon="lightbulb",
    ),
    CategoryDefinition(
        label="shopping",
        display_name="Shopping",
        type=TransactionType.EXPENSE,
        keywords=(
            "shop", "shopping", "store", "market", "purchase", "clothing", "fashion", "melcom",
            "palace shopping", "shoprite", "jumia", "supermarket", "grocery",
        ),
        merchant_patterns=_patterns(
            r"shop", r"store", r"market", r"fashion", r"clothing", r"melcom", r"palace.*shopping",
        ),
        context_clues=("purchase", "buy", "item", "product", "goods"),
        amount_profile=AmountProfile(1, 2000, (10, 25, 50, 100, 200)),
        icon="shopping-bag",
    ),
    CategoryDefinition(
        label="healthcare",
        display_name="Healthcare",
        type=TransactionType.EXPENSE,
        keywords=("hospital", "clinic", "doctor", "pharmacy", "medicine", "medical", "health", "medication"),
        merchant_patterns=_patterns(r"hospital", r"clinic", r"pharmacy", r"medical", r"health", r"doctor"),
        context_clues=("appointment", "prescription", "treatment", "checkup"),
        icon="heart",
    ),
    CategoryDefinition(
        label="education",
        display_name="Education",
        type=TransactionType.EXPENSE,
        keywords=("school", "university", "tuition", "books", "education", "course", "training"),
        merchant_patterns=_patterns(r"school", r"university", r"tuition", r"education", r"course", r"training"),
        context_clues=("fees", "semester", "academic", "study", "learn"),
        icon="book",
    ),
    CategoryDefinition(
        label="entertainment",
        display_name="Entertainment",
        type=TransactionType.EXPENSE,
        keywords=("movie", "cinema", "game", "sport", "music", "concert", "event"),
        merchant_patterns=_patterns(r"cinema", r"movie", r"\bgame", r"sport", r"music", r"concert", r"event"),
        context_clues=("ticket", "show", "fun", "leisure", "enjoy"),
        icon="play",
    ),
    CategoryDefinition(
        label="transfer_sent",
        display_name="Money Sent",
        type=TransactionType.EXPENSE,
        keywords=("transfer to", "sent money", "send money", "remittance", "money transfer"),
        merchant_patterns=_patterns(
            r"transfer.*friend", r"sent.*money", r"send money", r"remittance", r"money transfer",
        ),
        amount_profile=AmountProfile(10, 5000, (50, 100, 200, 500)),
        icon="send",
        aliases=("Transfer Sent",),
    ),
    CategoryDefinition(
        label="subscription",
        display_name="Subscriptions",
        type=TransactionType.EXPENSE,
        keywords=("netflix", "spotify", "subscription", "recurring", "premium", "showmax", "dstv"),
        merchant_patterns=_patterns(r"netflix", r"spotify", r"subscription", r"premium", r"dstv"),
        icon="repeat",
        aliases=("Subscription",),
    ),
    CategoryDefinition(
        label="banking_fees",
        display_name="Banking & Fees",
        type=TransactionType.EXPENSE,
        keywords=("fee", "charge", "bank charge", "service charge", "commission", "penalty", "levy", "e-levy"),
        merchant_patterns=_patterns(r"\bfees?\b", r"charge", r"commission", r"penalty", r"levy"),
        amount_profile=AmountProfile(0.5, 20, (1, 2, 5)),
        icon="credit-card",
        aliases=("Banking Fees",),
    ),
)

DEFINITIONS_BY_LABEL: dict[str, CategoryDefinition] = {
    definition.label: definition for definition in CATEGORY_DEFINITIONS
}

INCOME_INDICATORS = ("deposit", "salary", "pay", "income", "received", "credit")


def titleize_label(label: str) -> str:
    """``food_dining`` -> ``Food Dining``."""
    return " ".join(part.capitalize() for part in label.replace("-", "_").split("_") if part)


def label_for_name(name: str) -> str:
    """Map a category name back to its catalog label (``Food & Dining`` -> ``food_dining``)."""
    lowered = name.strip().lower()
    for definition in CATEGORY_DEFINITIONS:
        names = (definition.display_name, *definition.aliases, titleize_label(definition.label))
        if lowered in {candidate.lower() for candidate in names}:
            return definition.label
    return "_".join(lowered.replace("&", " ").split())


def infer_type_from_text(text: str, amount: Decimal | float) -> TransactionType:
    """Negative amounts are expenses; positive ones are income only when the text says so."""
    if amount < 0:
        return TransactionType.EXPENSE
    lowered = text.lower()
    if amount > 0 and any(indicator in lowered for indicator in INCOME_INDICATORS):
        return TransactionType.INCOME
    return TransactionType.EXPENSE


def icon_for_label(label: str) -> str:
    if label == UNCATEGORIZED_LABEL:
        return UNCATEGORIZED_ICON
    definition = DEFINITIONS_BY_LABEL.get(label)
    return definition.icon if definition else DEFAULT_ICON


def polarity_for_label(label: str) -> TransactionType | None:
    definition = DEFINITIONS_BY_LABEL.get(label)
    return definition.type if definition else None


def candidate_names(label: str) -> list[str]:
    """Names a stored category may carry for this label, most specific first."""
    if label == UNCATEGORIZED_LABEL:
        return [UNCATEGORIZED_NAME]
    names = [titleize_label(label)]
    definition = DEFINITIONS_BY_LABEL.get(label)
    if definition:
        for name in (definition.display_name, *definition.aliases):
            if name not in names:
                names.append(name)
    return names
