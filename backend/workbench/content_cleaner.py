"""Strip dev-server log noise that leaks into generated file content."""

import re


_NOISE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # request logs: "GET /api/foo 200 in 12ms"
    (re.compile(r"(?:GET|POST|PUT|PATCH|DELETE) /[^\s]* \d{3} in \d+ms\s*"), ""),
    (re.compile(r"✓ Compiled(?: [^\n]*?)? in \d+(?:\.\d+)?m?s\s*"), ""),
    # bracketed route prefixes, e.g. "[apply-ai-code-stream] ..."
    (
        re.compile(
            r"\[(?:conversation-state|create-ai-sandbox|generate-ai-code-stream|apply-ai-code-stream)\] [^\n]*\n?"
        ),
        "",
    ),
    (re.compile(r"(?:Starting|Failed) to clone [^\n]*\n?"), ""),
    # stray status fragments: "200 in 35ms"
    (re.compile(r"[ \t]*\b\d{3}\s+in\s+\d+ms\b[ \t]*"), ""),
]

_BLANK_RUNS = re.compile(r"\n{3,}")
_IMAGES_DECL = re.compile(r"const\s+images\s+GET[^=]*=\s*\[")


def clean_code_content(content: str) -> str:
    cleaned = content
    for pattern, repl in _NOISE_PATTERNS:
        cleaned = pattern.sub(repl, cleaned)
    cleaned = _BLANK_RUNS.sub("\n\n", cleaned)
    return cleaned.strip()


def clean_jsx_content(content: str) -> str:
    cleaned = clean_code_content(content)
    return _IMAGES_DECL.sub("const images = [", cleaned)


def clean_for_path(path: str, content: str) -> str:
    if path.endswith((".jsx", ".tsx")):
        return clean_jsx_content(content)
    return clean_code_content(content)
