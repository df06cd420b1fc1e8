"""Prompt templates for the review agent.

Templates are markdown files with ``{{placeholder}}`` variables. Which
template a repository uses comes from a JSON mapping file:

    {"defaultTemplate": "default", "repositories": {"billing-api": "strict"}}

``templates/custom/<name>.md`` is tried first, then ``templates/default/prompt.md``.
"""

import json
import logging
import re
from pathlib import Path
from typing import Optional

from common.errors import TemplateError
from common.job_models import DiffResult, ReviewRequest

logger = logging.getLogger(__name__)

PLACEHOLDERS = frozenset(
    {
        "prUrl",
        "title",
        "description",
        "author",
        "sourceBranch",
        "destinationBranch",
        "repository",
        "repoCloneUrl",
    }
)
RECOMMENDED_PLACEHOLDERS = (
    "prUrl",
    "title",
    "description",
    "author",
    "sourceBranch",
    "destinationBranch",
    "repository",
)
REQUIRED_SECTIONS = ("Role:", "Goal:", "PR:")

_PLACEHOLDER = re.compile(r"{{(\w+)}}")

DIFF_SECTION = """

---

## PR Changes (from merge-base)

The following diff shows ONLY the changes made by the PR author, calculated from the merge-base:

```diff
{diff}
```
"""

LARGE_DIFF_INSTRUCTIONS = """

---

## IMPORTANT: Reviewing Large PR Changes

This PR contains a large number of changes ({size_kb:.1f} KB of diff), so the diff is not included here. \
You **MUST** review only the changes made by the PR author, not commits that were merged into the \
destination branch after this PR was created.

### Critical Instructions:

1. **Use Merge-Base Comparison**: find the common ancestor of `{destination}` and `{source}` and \
compare only from that merge-base to the source branch.
2. **Do NOT compare branch tips directly** (`{destination}..{source}`); that includes unrelated changes.
3. **What to Review**: only changes that are part of this PR.

### Git Commands (run in the repository root):
```bash
MERGE_BASE=$(git merge-base origin/{destination} origin/{source})
git diff $MERGE_BASE..origin/{source}
```
"""


class TemplateManager:
    """Resolves, validates and renders the review prompt for a request."""

    def __init__(self, templates_dir: str, config_path: str):
        self.templates_dir = Path(templates_dir)
        self.config_path = Path(config_path)
        self.config = self._load_config()

    def _load_config(self) -> dict:
        defaults = {"defaultTemplate": "default", "repositories": {}}
        if not self.config_path.exists():
            return defaults
        try:
            data = json.loads(self.config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load template config, using defaults: {e}")
            return defaults
        if not isinstance(data, dict):
            logger.warning("Template config is not a JSON object, using defaults")
            return defaults
        return {
            "defaultTemplate": data.get("defaultTemplate") or "default",
            "repositories": data.get("repositories") or {},
        }

    def get_template_for_repository(self, repository: str) -> str:
        return self.config["repositories"].get(repository, self.config["defaultTemplate"])

    def load_template(self, template_name: str) -> str:
        custom_path = self.templates_dir / "custom" / f"{template_name}.md"
        if custom_path.is_file():
            logger.info(f"Loading custom template: {template_name}")
            return custom_path.read_text(encoding="utf-8")

        default_path = self.templates_dir / "default" / "prompt.md"
        if default_path.is_file():
            logger.info(f"Loading default template for: {template_name}")
            return default_path.read_text(encoding="utf-8")

        raise TemplateError(f"Template not found: {template_name}")

    @staticmethod
    def validate_template(template: str) -> list[str]:
        """Return a list of problems; an empty list means the template is usable."""
        if not template or not template.strip():
            return ["Template is empty"]

        errors = [f"Missing required section: {s}" for s in REQUIRED_SECTIONS if s not in template]

        leftover = _PLACEHOLDER.sub("", template)
        if "{{" in leftover or "}}" in leftover:
            errors.append("Malformed variable syntax found: unbalanced {{ or }}")

        found = set(_PLACEHOLDER.findall(template))
        unknown = sorted(found - PLACEHOLDERS)
        if unknown:
            errors.append(f"Undefined variables: {', '.join('{{' + v + '}}' for v in unknown)}")

        missing = [v for v in RECOMMENDED_PLACEHOLDERS if v not in found]
        if missing:
            logger.info(f"Note: template is missing recommended variables: {', '.join(missing)}")

        return errors

    @staticmethod
    def substitute_variables(template: str, variables: dict[str, str]) -> str:
        # Single pass: substituted values are never re-scanned for placeholders.
        def replace(match: re.Match) -> str:
            key = match.group(1)
            if key not in variables:
                raise TemplateError(f"Variable {{{{{key}}}}} has no value")
            return variables[key]

        return _PLACEHOLDER.sub(replace, template)

    def get_prompt_for_pr(self, request: ReviewRequest, diff: Optional[DiffResult] = None) -> str:
        template_name = self.get_template_for_repository(request.repository_name)
        template = self.load_template(template_name)

        errors = self.validate_template(template)
        if errors:
            logger.error(f"Template validation failed: {errors}")
            raise TemplateError(f"Invalid template {template_name!r}: {', '.join(errors)}")

        prompt = self.substitute_variables(
            template,
            {
                "prUrl": request.pull_request_url,
                "title": request.title,
                "description": request.description,
                "author": request.author,
                "sourceBranch": request.source_branch,
                "destinationBranch": request.destination_branch,
                "repository": request.repository_name,
                "repoCloneUrl": request.clone_url,
            },
        )

        if diff is None:
            return prompt

        if diff.size_too_large:
            logger.info("Added merge-base instructions for large diff")
            return prompt + LARGE_DIFF_INSTRUCTIONS.format(
                size_kb=diff.size_in_bytes / 1024,
                source=request.source_branch,
                destination=request.destination_branch,
            )

        logger.info("Included diff directly in prompt")
        return prompt + DIFF_SECTION.format(diff=diff.diff_text.rstrip("\n"))
