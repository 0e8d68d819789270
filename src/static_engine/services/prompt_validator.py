"""Rule-based cleanup of AI-produced ad copy before image generation.

Strips literal hex color codes from the image prompt (image models tend to
render them as visible text), fixes a dictionary of recurring AI misspellings
and flags output problems that cannot be repaired automatically.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Optional

from static_engine.models.generation import AdCopy

logger = logging.getLogger(__name__)

HEX_PATTERN = re.compile(r"#([0-9a-fA-F]{3,8})\b")

KNOWN_COLOR_NAMES = {
    "ffffff": "pure white",
    "000000": "pure black",
    "2c3e50": "dark charcoal navy",
    "676986": "muted slate purple",
    "e94560": "vibrant coral pink",
    "bd2e46": "deep crimson red",
    "ffd700": "bright gold",
    "333333": "dark charcoal",
    "f5f5f5": "very light gray",
    "f5f0eb": "warm cream off-white",
}

# Applied in order, whole word, case-insensitive
TYPO_CORRECTIONS = {
    "chaging": "changing",
    "changeing": "changing",
    "life-chaging": "life-changing",
    "veriified": "verified",
    "verifed": "verified",
    "reccommended": "recommended",
    "recomended": "recommended",
    "recommened": "recommended",
    "gauranteed": "guaranteed",
    "guarenteed": "guaranteed",
    "garaunteed": "guaranteed",
    "profesional": "professional",
    "proffesional": "professional",
    "beutiful": "beautiful",
    "beautifull": "beautiful",
    "recieve": "receive",
    "occured": "occurred",
    "definately": "definitely",
    "seperate": "separate",
    "ingrediants": "ingredients",
    "benifits": "benefits",
    "expereince": "experience",
    "satisifed": "satisfied",
    "excelent": "excellent",
    "imediately": "immediately",
    "noticable": "noticeable",
    "caliming": "calming",
    "pheramone": "pheromone",
    "phermone": "pheromone",
}

_TYPO_PATTERNS = [
    (typo, re.compile(rf"\b{re.escape(typo)}\b", re.IGNORECASE), correction)
    for typo, correction in TYPO_CORRECTIONS.items()
]

# Phrasing that describes the product instead of pointing at the reference photo
PRODUCT_DESCRIPTION_PATTERNS = [
    re.compile(
        r"a\s+(white|black|silver|round|cylindrical)\s+(device|diffuser|bottle|product)",
        re.IGNORECASE,
    ),
    re.compile(r"image\s+of\s+a\s+\w+\s+(device|product|bottle|container)", re.IGNORECASE),
]

PRODUCT_DESCRIPTION_WARNING = (
    "WARNING: Prompt appears to describe the product instead of referencing the provided photo"
)


def approximate_color_name(hex_code: str) -> str:
    """Describe a hex color in words from its brightness and dominant channel.

    Args:
        hex_code: Hex digits without ``#``

    Returns:
        Human readable color description
    """
    if len(hex_code) < 6:
        return "neutral color"

    r = int(hex_code[0:2], 16)
    g = int(hex_code[2:4], 16)
    b = int(hex_code[4:6], 16)
    brightness = (r * 299 + g * 587 + b * 114) / 1000

    if brightness > 220:
        return "very light tone"
    if brightness < 40:
        return "very dark tone"

    if abs(r - g) < 20 and abs(g - b) < 20:
        return "light gray" if brightness > 150 else "dark gray"

    if r > g and r > b:
        return "warm light red-pink" if brightness > 150 else "deep rich red"
    if g > r and g > b:
        return "fresh light green" if brightness > 150 else "deep forest green"
    return "soft light blue" if brightness > 150 else "deep navy blue"


def hex_to_name(hex_code: str) -> str:
    """Map hex digits (without ``#``) to a color name."""
    lower = hex_code.lower()
    return KNOWN_COLOR_NAMES.get(lower) or approximate_color_name(lower)


def _normalize_hex(value: str) -> str:
    return value.strip().lstrip("#").lower()


@dataclass
class ValidationResult:
    """Outcome of validating one copy object."""

    copy: AdCopy
    issues: list[str] = field(default_factory=list)

    @property
    def cleaned_prompt(self) -> str:
        return self.copy.image_prompt

    @property
    def is_valid(self) -> bool:
        return not self.issues


class PromptValidator:
    """Cleans and lints copy produced by the copy generator.

    Validation is a pure function of its inputs: the given ``AdCopy`` is not
    modified and no I/O happens apart from a warning log line.
    """

    def validate(
        self, copy: AdCopy, brand_colors: Optional[dict[str, str]] = None
    ) -> ValidationResult:
        """Validate copy and return a cleaned copy plus issues found.

        Args:
            copy: Copy generator output
            brand_colors: Brand palette keyed by role (primary, accent, ...)

        Returns:
            ValidationResult with the cleaned copy and human-readable issues
        """
        issues: list[str] = []

        prompt = self._strip_hex_codes(copy.image_prompt, brand_colors or {}, issues)
        prompt = self._fix_typos(prompt, "prompt", issues)

        headline = self._fix_typos(copy.headline, "headline", issues)
        subheadline = self._fix_typos(copy.subheadline, "subheadline", issues)
        body_text = self._fix_typos(copy.body_text, "body_text", issues)
        cta_text = self._fix_typos(copy.cta_text, "cta_text", issues)
        callouts = [self._fix_typos(text, "callout", issues) for text in copy.callout_texts]

        duplicates = self._find_duplicates(callouts)
        if duplicates:
            issues.append(f"Duplicate callout texts found: {', '.join(duplicates)}")

        if any(pattern.search(prompt) for pattern in PRODUCT_DESCRIPTION_PATTERNS):
            issues.append(PRODUCT_DESCRIPTION_WARNING)

        if issues:
            logger.warning(
                f"Prompt validation found {len(issues)} issues: {'; '.join(issues)}"
            )

        cleaned = replace(
            copy,
            headline=headline,
            subheadline=subheadline,
            body_text=body_text,
            callout_texts=callouts,
            cta_text=cta_text,
            image_prompt=prompt,
        )
        return ValidationResult(copy=cleaned, issues=issues)

    @staticmethod
    def _strip_hex_codes(
        prompt: str, brand_colors: dict[str, str], issues: list[str]
    ) -> str:
        matches = [m.group(0) for m in HEX_PATTERN.finditer(prompt)]
        if not matches:
            return prompt

        issues.append(f"Found {len(matches)} hex codes in prompt: {', '.join(matches)}")
        roles = {
            _normalize_hex(value): role for role, value in brand_colors.items() if value
        }

        def to_name(match: re.Match) -> str:
            digits = match.group(1)
            name = hex_to_name(digits)
            role = roles.get(digits.lower())
            if role:
                return f"{name} (brand {role} color)"
            return name

        return HEX_PATTERN.sub(to_name, prompt)

    @staticmethod
    def _fix_typos(text: str, field_name: str, issues: list[str]) -> str:
        if not text:
            return text
        for typo, pattern, correction in _TYPO_PATTERNS:
            if pattern.search(text):
                issues.append(f'Fixed typo in {field_name}: "{typo}" -> "{correction}"')
                text = pattern.sub(correction, text)
        return text

    @staticmethod
    def _find_duplicates(callouts: list[str]) -> list[str]:
        seen: set[str] = set()
        duplicates: list[str] = []
        for text in callouts:
            key = " ".join(text.lower().split())
            if key in seen:
                duplicates.append(key)
            seen.add(key)
        return duplicates
