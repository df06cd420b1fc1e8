import re
from dataclasses import dataclass
from typing import Dict, List

_DIFF_HEADER = re.compile(r'^diff --git a/.+ b/(.+)$')


@dataclass
class FileChangeStats:
    file_path: str
    lines_added: int = 0
    lines_removed: int = 0


def split_diff_by_file(diff_text: str) -> Dict[str, str]:
    """
    Split a unified diff into per-file diff chunks.

    Args:
        diff_text: Full unified diff string

    Returns:
        Dict mapping file_path -> that file's diff text
    """
    files: Dict[str, List[str]] = {}
    current_file = None

    for line in diff_text.splitlines():
        header = _DIFF_HEADER.match(line)
        if header:
            current_file = header.group(1)
            files[current_file] = [line]
            continue

        if current_file is not None:
            files[current_file].append(line)

    return {path: "\n".join(lines) for path, lines in files.items()}


def summarize_diff(diff_text: str) -> List[FileChangeStats]:
    """Count added/removed lines per file, skipping the ---/+++ headers."""
    summary: List[FileChangeStats] = []

    for file_path, chunk in split_diff_by_file(diff_text).items():
        stats = FileChangeStats(file_path=file_path)
        for line in chunk.splitlines():
            if line.startswith("+") and not line.startswith("+++"):
                stats.lines_added += 1
            elif line.startswith("-") and not line.startswith("---"):
                stats.lines_removed += 1
        summary.append(stats)

    return summary
