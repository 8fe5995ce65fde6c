"""Keyword-based product category classification."""

from greener.estimate.types import Category

# Checked in order; the first group with a matching keyword wins.
CATEGORY_KEYWORDS: list[tuple[Category, tuple[str, ...]]] = [
    (
        Category.FASHION,
        (
            "shirt",
            "socks",
            "sunglasses",
            "mascara",
            "makeup",
            "shampoo",
            "moisturizer",
            "lip balm",
        ),
    ),
    (
        Category.ELECTRONICS,
        (
            "smart",
            "phone",
            "camera",
            "headset",
            "gpu",
            "webcam",
            "mouse",
            "memory card",
            "thermometer",
            "laptop",
            "toothbrush",
            "blender",
        ),
    ),
    (
        Category.HEALTH_PERSONAL_CARE,
        (
            "water",
            "vitamin",
            "almonds",
            "detergent",
            "sunscreen",
            "drops",
        ),
    ),
    (
        Category.HOME_GARDEN,
        (
            "bottle",
            "tumbler",
            "flask",
            "pot",
            "cooker",
            "sheet",
            "yoga mat",
            "car seat",
        ),
    ),
]


def classify(product_name: str | None) -> Category:
    """
    Assign a category from a free-text product name.

    Total: unmatched, empty or missing names map to ``Category.OTHER``.
    """
    name = (product_name or "").lower()
    if not name:
        return Category.OTHER

    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in name for keyword in keywords):
            return category

    return Category.OTHER
