"""Transaction categories: built-in table, MCC mapping and resolution."""

from collections.abc import Iterable, Mapping

from .models import CategoryInfo, CustomCategory, Transaction

DEFAULT_CATEGORY = "other"

# key -> (name, icon, color)
BUILTIN_CATEGORIES: dict[str, tuple[str, str, str]] = {
    "groceries": ("Продукти", "🛒", "#22c55e"),
    "restaurants": ("Ресторани та кафе", "🍽️", "#f97316"),
    "transport": ("Транспорт", "🚗", "#3b82f6"),
    "delivery": ("Пошта та доставка", "📦", "#78716c"),
    "utilities": ("Комунальні послуги", "💡", "#eab308"),
    "entertainment": ("Розваги", "🎬", "#a855f7"),
    "shopping": ("Покупки", "🛍️", "#ec4899"),
    "health": ("Здоров'я", "💊", "#14b8a6"),
    "education": ("Освіта", "📚", "#6366f1"),
    "travel": ("Подорожі", "✈️", "#0ea5e9"),
    "services": ("Послуги", "🔧", "#64748b"),
    "subscriptions": ("Підписки", "📋", "#7c3aed"),
    "transfers": ("Перекази", "💸", "#8b5cf6"),
    "mobile": ("Мобільний зв'язок", "📱", "#06b6d4"),
    "cash": ("Готівка", "💵", "#84cc16"),
    "charity": ("Благодійність", "❤️", "#ef4444"),
    "other": ("Інше", "❓", "#94a3b8"),
}

# Checked in order; first match wins
DESCRIPTION_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("delivery", (
        "нова пошта", "nova poshta", "novaposhta", "укрпошта", "ukrposhta", "meest",
        "міст", "justin", "джастін", "rozetka delivery", "доставка",
    )),
    ("utilities", (
        "комунальн", "квартплата", "жкг", "жкх", "осбб", "водоканал", "теплоенерг",
        "газопостач", "облгаз", "обленерго", "енергопостач", "київенерго", "його",
    )),
    ("subscriptions", (
        "netflix", "spotify", "youtube", "apple", "google play", "steam", "microsoft",
        "adobe", "chatgpt", "openai", "notion", "figma", "megogo", "мегого", "підписка",
    )),
    ("transfers", ("переказ", "на картку", "поповнення «")),
    ("mobile", ("lifecell", "vodafone", "київстар", "kyivstar", "+380")),
    ("charity", ("збір", "омбр", "зсу", "донат", "благодійн")),
    ("transport", (
        "bolt", "uber", "uklon", "уклон", "таксі", "taxi", "wog", "okko", "upg", "азс",
        "бензин", "пальне", "pkp", "укрзалізниця", "залізничн",
    )),
    ("groceries", (
        "атб", "atb", "сільпо", "фора", "fora", "новус", "novus", "ашан", "auchan",
        "метро", "metro", "варус", "костор", "екомаркет", "гастроном",
    )),
    ("restaurants", (
        "glovo", "глово", "raketa", "mcdonald", "макдональд", "kfc", "pizza", "піца",
    )),
]

# (first, last, key) inclusive ranges; checked in order
MCC_RANGES: list[tuple[int, int, str]] = [
    (4722, 4722, "travel"),
    (4829, 4829, "transfers"),
    (5411, 5499, "groceries"),
    (5311, 5311, "groceries"),
    (5331, 5331, "groceries"),
    (5812, 5814, "restaurants"),
    (5462, 5462, "restaurants"),
    (5441, 5441, "restaurants"),
    (5921, 5921, "restaurants"),
    (4011, 4789, "transport"),
    (5511, 5599, "transport"),
    (7512, 7512, "transport"),
    (4812, 4900, "utilities"),
    (7832, 7841, "entertainment"),
    (7911, 7999, "entertainment"),
    (5735, 5735, "entertainment"),
    (5815, 5818, "entertainment"),
    (5200, 5399, "shopping"),
    (5600, 5699, "shopping"),
    (5700, 5799, "shopping"),
    (5912, 5912, "health"),
    (5975, 5977, "health"),
    (5900, 5999, "shopping"),
    (5045, 5046, "shopping"),
    (8011, 8099, "health"),
    (8211, 8299, "education"),
    (5111, 5111, "education"),
    (5192, 5192, "education"),
    (3000, 3999, "travel"),
    (7011, 7033, "travel"),
    (7210, 7299, "services"),
    (7311, 7399, "services"),
    (7500, 7549, "services"),
    (8111, 8999, "services"),
    (6010, 6011, "cash"),
    (6012, 6099, "transfers"),
]


def get_mcc_category(mcc: int) -> str:
    """Map a merchant category code to a built-in category key."""
    for first, last, key in MCC_RANGES:
        if first <= mcc <= last:
            return key
    return DEFAULT_CATEGORY


def get_category_from_description(description: str) -> str | None:
    """Detect a category key from bank description text, or None."""
    text = description.lower()
    for key, keywords in DESCRIPTION_RULES:
        if any(keyword in text for keyword in keywords):
            return key
    return None


def get_builtin_category(key: str) -> CategoryInfo:
    """Built-in category by key, falling back to the default bucket."""
    if key not in BUILTIN_CATEGORIES:
        key = DEFAULT_CATEGORY
    name, icon, color = BUILTIN_CATEGORIES[key]
    return CategoryInfo(key=key, name=name, icon=icon, color=color, is_custom=False)


def get_all_categories(custom_categories: Iterable[CustomCategory] = ()) -> list[CategoryInfo]:
    """All built-in categories followed by custom ones."""
    result = [get_builtin_category(key) for key in BUILTIN_CATEGORIES]
    result.extend(
        CategoryInfo(key=c.id, name=c.name, icon=c.icon, color=c.color, is_custom=True)
        for c in custom_categories
    )
    return result


def is_known_category(key: str, custom_categories: Iterable[CustomCategory] = ()) -> bool:
    """Check that key references a built-in or custom category."""
    return key in BUILTIN_CATEGORIES or any(c.id == key for c in custom_categories)


def category_key_for(tx: Transaction, manual_overrides: Mapping[str, str | None]) -> str:
    """Category key only, for grouping. Same priority as resolve_category."""
    manual = manual_overrides.get(tx.id)
    if manual:
        return manual
    return get_category_from_description(tx.description) or get_mcc_category(tx.mcc)


def resolve_category(
    tx: Transaction,
    manual_overrides: Mapping[str, str | None],
    custom_categories: Iterable[CustomCategory] = (),
) -> CategoryInfo:
    """Resolve the display category of a transaction.

    Priority:
        1. Manual override (custom categories first, then built-in keys)
        2. Description heuristic
        3. MCC table, ending in the "other" bucket

    Always returns a category.
    """
    manual = manual_overrides.get(tx.id)
    if manual:
        for custom in custom_categories:
            if custom.id == manual:
                return CategoryInfo(
                    key=custom.id,
                    name=custom.name,
                    icon=custom.icon,
                    color=custom.color,
                    is_custom=True,
                )
        if manual in BUILTIN_CATEGORIES:
            return get_builtin_category(manual)

    description_key = get_category_from_description(tx.description)
    if description_key:
        return get_builtin_category(description_key)

    return get_builtin_category(get_mcc_category(tx.mcc))
