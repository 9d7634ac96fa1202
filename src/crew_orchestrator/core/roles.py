"""Worker roles and the heuristics that map tasks and plans onto them."""

ROLES = ("architect", "tech_lead", "frontend_dev", "backend_dev", "qa", "custom")

CATEGORIES = ("feature", "bug", "refactor", "test", "docs")

CATEGORY_TO_ROLES: dict[str, list[str]] = {
    "feature": ["frontend_dev", "backend_dev"],
    "bug": ["qa", "backend_dev", "frontend_dev"],
    "refactor": ["backend_dev", "frontend_dev", "architect"],
    "test": ["qa"],
    "docs": ["tech_lead", "frontend_dev"],
}

FRONTEND_SIGNALS = (
    "react", "component", "ui", "ux", "tailwind", "css", "frontend",
    "page", "layout", "form", "button", "modal", "dialog", "sidebar",
    "tsx", "jsx", "zustand", "hook", "animation", "responsive",
)

BACKEND_SIGNALS = (
    "api", "route", "endpoint", "database", "drizzle", "sql", "query",
    "backend", "server", "express", "socket", "middleware", "migration",
    "auth", "encryption", "integration", "webhook",
)

# Developer roles never include the coordinating roles.
NON_DEV_ROLES = ("tech_lead", "architect", "qa")


def preferred_roles(category: str | None) -> list[str]:
    """Roles to try first for a task of the given category (empty if unknown)."""
    if not category:
        return []
    return list(CATEGORY_TO_ROLES.get(category, []))


def detect_dev_from_plan(plan: str | None) -> str:
    """Pick the developer role a plan is written for.

    An explicit role name in the plan wins outright. Otherwise the role whose
    vocabulary has more hits wins, with ties (including no hits at all)
    going to frontend.
    """
    lower = (plan or "").lower()

    if "frontend_dev" in lower or "frontend dev" in lower:
        return "frontend_dev"
    if "backend_dev" in lower or "backend dev" in lower:
        return "backend_dev"

    frontend_score = sum(1 for signal in FRONTEND_SIGNALS if signal in lower)
    backend_score = sum(1 for signal in BACKEND_SIGNALS if signal in lower)

    return "frontend_dev" if frontend_score >= backend_score else "backend_dev"
