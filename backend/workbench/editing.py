from typing import Any


def display_code_with_line_numbers(code: str) -> str:
    return "\n".join([f"[{i + 1}]{line}" for i, line in enumerate(code.split("\n"))])


def apply_range_edit(file_content: str, args: dict[str, Any]) -> dict[str, Any]:
    """Replace ``find`` with ``replace`` inside a 1-based inclusive line range.

    Returns a dict with ``new_code`` on success, or ``error`` plus context
    when the range is invalid or the text is not inside it.
    """
    lines = file_content.split("\n")
    try:
        start_idx = int(args["find_start_line"]) - 1
        end_idx = int(args["find_end_line"]) - 1
        find = str(args["find"])
        replace = str(args.get("replace", ""))
    except (KeyError, TypeError, ValueError) as e:
        return {"error": f"Invalid edit arguments: {e}"}
    if start_idx < 0 or end_idx >= len(lines) or start_idx > end_idx:
        return {
            "error": "Line numbers out of range or invalid",
            "total_lines": len(lines),
        }
    existing_text = "\n".join(lines[start_idx : end_idx + 1])
    if not find or find not in existing_text:
        return {
            "error": "Find text not found at specified lines",
            "existing_text": existing_text,
        }
    new_text = existing_text.replace(find, replace)
    new_lines = lines[:start_idx] + new_text.split("\n") + lines[end_idx + 1 :]
    return {
        "find_start_line": start_idx + 1,
        "find_end_line": end_idx + 1,
        "old_text": existing_text,
        "new_text": new_text,
        "new_code": "\n".join(new_lines),
    }
