"""Guarded textual transformations for unattended fixes.

Each patch is a ``(guard, transform)`` pair. The guard reports whether the
content already carries the patch; the executor only runs the transform when
it does not, which is what makes re-applying a plan a no-op.
"""

import re
from dataclasses import dataclass
from typing import Callable

from workbench.models import PatchKind


@dataclass(frozen=True)
class Patch:
    kind: PatchKind
    is_applied: Callable[[str], bool]
    transform: Callable[[str], str]


_FENCE_LINE_RE = re.compile(r"^[ \t]*```[\w-]*[ \t]*\r?\n?", re.MULTILINE)


def _css_is_clean(content: str) -> bool:
    return _FENCE_LINE_RE.search(content) is None


def _strip_css_markdown(content: str) -> str:
    return _FENCE_LINE_RE.sub("", content).rstrip("\n") + "\n"


_BODY_TAG_RE = re.compile(r"<body(\s[^>]*?)?(\s*/?)>")


def _has_hydration_suppression(content: str) -> bool:
    return "suppressHydrationWarning" in content


def _suppress_hydration_warning(content: str) -> str:
    def _add_attr(match: re.Match[str]) -> str:
        attrs = match.group(1) or ""
        return f"<body{attrs} suppressHydrationWarning{match.group(2)}>"

    return _BODY_TAG_RE.sub(_add_attr, content, count=1)


_WRITER_CLOSE_RE = re.compile(r"^([ \t]*)await writer\.close\(\);", re.MULTILINE)


def _has_stream_guard(content: str) -> bool:
    return "!stream.locked" in content


def _guard_stream_close(content: str) -> str:
    def _wrap(match: re.Match[str]) -> str:
        indent = match.group(1)
        return (
            f"{indent}try {{\n"
            f"{indent}  if (writer && !stream.locked) {{\n"
            f"{indent}    await writer.close();\n"
            f"{indent}  }}\n"
            f"{indent}}} catch (closeError) {{\n"
            f"{indent}  console.warn('Writer already closed or stream locked:', closeError);\n"
            f"{indent}}}"
        )

    return _WRITER_CLOSE_RE.sub(_wrap, content)


VALIDATE_URL_HELPER = """function validateUrl(url: string): string {
  try {
    if (!url.startsWith('http://') && !url.startsWith('https://')) {
      url = 'https://' + url;
    }
    const validUrl = new URL(url);
    return validUrl.toString();
  } catch {
    throw new Error('Invalid URL format');
  }
}
"""

_TARGET_URL_RE = re.compile(r"const targetUrl = url;")


def _has_url_validation(content: str) -> bool:
    return "function validateUrl" in content


def _validate_scrape_url(content: str) -> str:
    if not _TARGET_URL_RE.search(content):
        return content
    patched = _TARGET_URL_RE.sub("const targetUrl = validateUrl(url);", content)
    return VALIDATE_URL_HELPER + "\n" + patched


PATCHES: dict[PatchKind, Patch] = {
    PatchKind.STRIP_CSS_MARKDOWN: Patch(
        PatchKind.STRIP_CSS_MARKDOWN, _css_is_clean, _strip_css_markdown
    ),
    PatchKind.SUPPRESS_HYDRATION_WARNING: Patch(
        PatchKind.SUPPRESS_HYDRATION_WARNING,
        _has_hydration_suppression,
        _suppress_hydration_warning,
    ),
    PatchKind.GUARD_STREAM_CLOSE: Patch(
        PatchKind.GUARD_STREAM_CLOSE, _has_stream_guard, _guard_stream_close
    ),
    PatchKind.VALIDATE_SCRAPE_URL: Patch(
        PatchKind.VALIDATE_SCRAPE_URL, _has_url_validation, _validate_scrape_url
    ),
}


def get_patch(kind: PatchKind) -> Patch:
    return PATCHES[kind]
