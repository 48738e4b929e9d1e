"""Ordered error rules and the single dispatch function over them.

Rules are evaluated strictly in declaration order and the first match wins.
Specific framework patterns come before the generic syntax pattern, which
would otherwise swallow them.

Producers are pure functions of the error text: they pull a file path or
module name out of the message and return ``None`` when the text does not
have the expected shape.
"""

import re
from dataclasses import dataclass
from functools import partial
from typing import Callable

from workbench.config import settings
from workbench.files import normalize_path
from workbench.models import (
    ErrorCategory,
    PatchKind,
    RemediationPlan,
    UNKNOWN_CATEGORY,
)


Producer = Callable[[str], RemediationPlan | None]


@dataclass(frozen=True)
class ErrorRule:
    name: str
    pattern: re.Pattern[str]
    category: ErrorCategory
    description: str
    producer: Producer | None = None

    def matches(self, error_text: str) -> bool:
        return self.pattern.search(error_text) is not None


_CSS_FILE_RE = re.compile(r"([\w.@/\\-]+\.css)\b")
_TS_FRAME_RE = re.compile(r"at .*?\(([^():]+\.ts):(\d+):(\d+)\)")
# "Can't" carries an apostrophe, so the anchored forms are tried first
_MODULE_RES = (
    re.compile(r"Can't resolve ['\"]([^'\"]+)['\"]"),
    re.compile(r"Cannot find module ['\"]([^'\"]+)['\"]"),
    re.compile(r"['\"]([^'\"]+)['\"]"),
)
_SCRIPT_AT_RE = re.compile(r"at\s+([^:\s]+\.(?:jsx?|tsx?))")


def css_markdown_fix(error_text: str) -> RemediationPlan | None:
    match = _CSS_FILE_RE.search(error_text)
    if not match:
        return None
    return RemediationPlan(
        target_file=normalize_path(match.group(1)),
        patch_kind=PatchKind.STRIP_CSS_MARKDOWN,
        patch_description="Remove markdown code fences from CSS file",
        explanation="CSS files should not contain markdown syntax like ```css",
        rule="css_markdown",
    )


def hydration_fix(error_text: str, layout_file: str) -> RemediationPlan | None:
    return RemediationPlan(
        target_file=layout_file,
        patch_kind=PatchKind.SUPPRESS_HYDRATION_WARNING,
        patch_description="Add suppressHydrationWarning to the body element",
        explanation="Browser extensions or client-only code caused a hydration mismatch",
        rule="hydration_mismatch",
    )


def stream_close_fix(error_text: str) -> RemediationPlan | None:
    match = _TS_FRAME_RE.search(error_text)
    if not match:
        return None
    return RemediationPlan(
        target_file=normalize_path(match.group(1)),
        patch_kind=PatchKind.GUARD_STREAM_CLOSE,
        patch_description="Add stream state checks before closing the writer",
        explanation="Stream was already closed or locked when attempting to close",
        rule="closed_stream",
    )


def scrape_url_fix(error_text: str, route_file: str) -> RemediationPlan | None:
    return RemediationPlan(
        target_file=route_file,
        patch_kind=PatchKind.VALIDATE_SCRAPE_URL,
        patch_description="Validate and normalize the URL before scraping",
        explanation="URLs embedded in prompts need a scheme and must parse before they reach the scraper",
        rule="invalid_scrape_url",
    )


def missing_module_fix(error_text: str) -> RemediationPlan | None:
    match = None
    for pattern in _MODULE_RES:
        match = pattern.search(error_text)
        if match:
            break
    if not match:
        return None
    module = match.group(1)
    if module.startswith((".", "/", "@/")):
        return RemediationPlan(
            target_file=module,
            manual=True,
            patch_description=f"Create {module} or fix the import that references it",
            explanation=f"Local module not found: {module}",
            rule="missing_module",
        )
    return RemediationPlan(
        target_file="package.json",
        manual=True,
        patch_description=f"npm install {module}",
        explanation=f"Missing dependency: {module}",
        rule="missing_module",
    )


def syntax_fix(error_text: str) -> RemediationPlan | None:
    match = _SCRIPT_AT_RE.search(error_text)
    if not match:
        return None
    return RemediationPlan(
        target_file=normalize_path(match.group(1)),
        manual=True,
        patch_description="Review and fix syntax error",
        explanation="Syntax error detected in file",
        rule="syntax_error",
    )


def build_rules(
    layout_file: str = settings.layout_file,
    scrape_route_file: str = settings.scrape_route_file,
) -> tuple[ErrorRule, ...]:
    return (
        ErrorRule(
            name="css_markdown",
            pattern=re.compile(r"\[postcss\].*Unknown word.*```css", re.DOTALL),
            category=ErrorCategory.CSS,
            description="CSS file contains markdown syntax",
            producer=css_markdown_fix,
        ),
        ErrorRule(
            name="hydration_mismatch",
            pattern=re.compile(r"hydrated but some attributes.*didn't match", re.DOTALL),
            category=ErrorCategory.HYDRATION,
            description="React hydration mismatch",
            producer=partial(hydration_fix, layout_file=layout_file),
        ),
        ErrorRule(
            name="closed_stream",
            pattern=re.compile(r"WritableStream is closed|Invalid state.*WritableStream"),
            category=ErrorCategory.RUNTIME,
            description="Stream handling error",
            producer=stream_close_fix,
        ),
        ErrorRule(
            name="invalid_scrape_url",
            pattern=re.compile(r"Firecrawl API error.*Invalid url|Invalid URL"),
            category=ErrorCategory.RUNTIME,
            description="Invalid URL format for scrape API",
            producer=partial(scrape_url_fix, route_file=scrape_route_file),
        ),
        ErrorRule(
            name="missing_module",
            pattern=re.compile(r"Cannot find module|Module not found"),
            category=ErrorCategory.BUILD,
            description="Missing module dependency",
            producer=missing_module_fix,
        ),
        ErrorRule(
            name="syntax_error",
            pattern=re.compile(r"Unexpected token|SyntaxError"),
            category=ErrorCategory.SYNTAX,
            description="JavaScript/TypeScript syntax error",
            producer=syntax_fix,
        ),
    )


RULES: tuple[ErrorRule, ...] = build_rules()


def classify(error_text: str, rules: tuple[ErrorRule, ...] = RULES) -> ErrorRule | None:
    """Return the first rule whose pattern matches, or None."""
    for rule in rules:
        if rule.matches(error_text):
            return rule
    return None


def get_category(error_text: str, rules: tuple[ErrorRule, ...] = RULES) -> str:
    rule = classify(error_text, rules)
    return rule.category.value if rule else UNKNOWN_CATEGORY
