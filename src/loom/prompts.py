"""Prompt construction and model selection for v0 generation sessions."""

from __future__ import annotations

import enum
import re

from pydantic import BaseModel

SYSTEM_PROMPT = (
    "Generate React components using Next.js 14+ App Router, Tailwind CSS, and shadcn/ui."
)


class ComplexityTier(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Label keywords per tier. Highest matching tier wins.
_TIER_KEYWORDS: dict[ComplexityTier, tuple[str, ...]] = {
    ComplexityTier.HIGH: ("complex", "epic", "large", "xl", "high-complexity"),
    ComplexityTier.LOW: ("simple", "small", "trivial", "quick", "xs", "low-complexity"),
}


class ModelSelection(BaseModel):
    model_id: str
    thinking: bool = False


_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")


def complexity_from_labels(labels: list[str]) -> ComplexityTier:
    """Derive a complexity tier from issue label names (MEDIUM when nothing matches).

    A keyword matches a whole label, or a whole token of it: "XL" and "size: xl"
    match, "pixel-perfect" does not.
    """
    names = {label.strip().lower() for label in labels}
    tokens = {tok for name in names for tok in _TOKEN_SPLIT_RE.split(name) if tok}

    def _has(tier: ComplexityTier) -> bool:
        keywords = _TIER_KEYWORDS[tier]
        return any(kw in names for kw in keywords) or any(kw in tokens for kw in keywords)

    if _has(ComplexityTier.HIGH):
        return ComplexityTier.HIGH
    if _has(ComplexityTier.LOW):
        return ComplexityTier.LOW
    return ComplexityTier.MEDIUM


def select_model(tier: ComplexityTier, models: dict[str, str]) -> ModelSelection:
    """Map a tier to a v0 model. Only the top tier enables extended reasoning."""
    return ModelSelection(
        model_id=models[tier.value],
        thinking=tier == ComplexityTier.HIGH,
    )


def project_name_for(issue: dict) -> str:
    """v0 project name for an issue, e.g. ``linear-abc-1``."""
    identifier = issue.get("identifier") or issue.get("id") or "issue"
    return f"linear-{identifier}".lower()


def format_issue_prompt(title: str, description: str | None, labels: list[str]) -> str:
    """Render a Linear issue as a v0 component request."""
    lowered = [label.lower() for label in labels]

    def _has(*keywords: str) -> bool:
        return any(kw in label for label in lowered for kw in keywords)

    dark_mode = _has("dark", "theme")
    responsive = _has("responsive", "mobile")
    a11y = _has("a11y", "accessibility", "wcag")

    lines = [f"# Component Request: {title}", ""]

    if description:
        lines += ["## Requirements", description, ""]

    lines += [
        "## Tech Stack",
        "- Framework: Next.js 14+ (App Router)",
        "- Styling: Tailwind CSS",
        "- Components: shadcn/ui",
        "- Language: TypeScript (strict mode)",
        "",
    ]

    if dark_mode or responsive or a11y:
        lines.append("## Design Requirements")
        if dark_mode:
            lines.append("- Dark mode support with proper color schemes")
        if responsive:
            lines.append("- Fully responsive (mobile, tablet, desktop)")
        if a11y:
            lines.append("- WCAG 2.1 AA accessibility compliance")
        lines.append("")

    lines += [
        "## Additional Guidelines",
        "- Use semantic HTML elements",
        "- Implement proper TypeScript types",
        "- Use Tailwind's design tokens (colors, spacing)",
        "- Ensure components are reusable and composable",
        "- Add hover/focus states for interactive elements",
    ]
    return "\n".join(lines)
