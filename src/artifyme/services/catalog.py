"""Static product catalog: transformation styles, credit packages, plans.

All prices are integer minor units (centavos for BRL, cents for EUR).
Region BR bills in BRL through Asaas; region PT bills in EUR through Stripe.
"""

STYLES: list[dict[str, str]] = [
    {"id": "cartoon", "name": "Cartoon", "description": "Fun cartoon style"},
    {"id": "graffiti", "name": "Graffiti", "description": "Urban street art style"},
    {"id": "watercolor", "name": "Watercolor", "description": "Soft watercolor painting"},
    {"id": "sketch", "name": "Sketch", "description": "Pencil sketch effect"},
    {"id": "pop-art", "name": "Pop Art", "description": "Andy Warhol inspired"},
    {"id": "neon", "name": "Neon", "description": "Vibrant neon lights"},
    {"id": "anime", "name": "Anime", "description": "Japanese animation style"},
    {"id": "renaissance", "name": "Renascentista", "description": "Classical renaissance painting"},
    {"id": "impressionist", "name": "Impressionista", "description": "Impressionist brush strokes"},
    {"id": "minimalist", "name": "Minimalista", "description": "Clean minimal design"},
]

STYLE_IDS = frozenset(s["id"] for s in STYLES)

CREDIT_PACKAGES: dict[str, dict[str, int]] = {
    "small": {"credits": 10, "BRL": 1990, "EUR": 490},
    "medium": {"credits": 50, "BRL": 7990, "EUR": 1990},
    "large": {"credits": 150, "BRL": 19990, "EUR": 4990},
}

# Yearly prices carry a 20% discount. transformations == -1 means unlimited.
SUBSCRIPTION_PLANS: dict[str, dict] = {
    "basic": {
        "BRL": {"monthly": 2990, "yearly": 28710},
        "EUR": {"monthly": 790, "yearly": 7580},
        "transformations": 20,
    },
    "pro": {
        "BRL": {"monthly": 5990, "yearly": 57510},
        "EUR": {"monthly": 1490, "yearly": 14310},
        "transformations": 50,
    },
    "premium": {
        "BRL": {"monthly": 9990, "yearly": 95910},
        "EUR": {"monthly": 2490, "yearly": 23910},
        "transformations": -1,
    },
}

REGION_CURRENCY = {"BR": "BRL", "PT": "EUR"}
REGION_PROVIDER = {"BR": "asaas", "PT": "stripe"}


def currency_for(region: str) -> str:
    return REGION_CURRENCY.get(region, "EUR")


def package_price(package_id: str, region: str) -> int:
    return CREDIT_PACKAGES[package_id][currency_for(region)]


def plan_price(plan: str, billing_cycle: str, region: str) -> int:
    return SUBSCRIPTION_PLANS[plan][currency_for(region)][billing_cycle]


def plans_for_region(region: str) -> dict[str, list[dict]]:
    """Plans and packages priced in the region's currency (GET /api/payments/plans)."""
    currency = currency_for(region)
    plans = [
        {
            "id": plan_id,
            "name": plan_id.capitalize(),
            "monthly_price": plan[currency]["monthly"],
            "yearly_price": plan[currency]["yearly"],
            "transformations_per_month": plan["transformations"],
            "currency": currency,
        }
        for plan_id, plan in SUBSCRIPTION_PLANS.items()
    ]
    packages = [
        {
            "id": package_id,
            "credits": pkg["credits"],
            "price": pkg[currency],
            "currency": currency,
        }
        for package_id, pkg in CREDIT_PACKAGES.items()
    ]
    return {"plans": plans, "packages": packages}
