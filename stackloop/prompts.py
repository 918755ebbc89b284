"""Prompt rendering for the implementer, reviewer, checker and classifier.

Templates live in ``stackloop/templates/*.md`` and are rendered with Jinja.
"""

import json
import re
from functools import lru_cache
from importlib import resources
from typing import Any, Iterable, List, Tuple

from jinja2 import Template

# Diff lines sent to the checker: head and tail of the full diff
DIFF_HEAD_LINES = 1200
DIFF_TAIL_LINES = 400
# Error output lines sent to the classifier
ERROR_TAIL_LINES = 100


@lru_cache(maxsize=None)
def load_template(name: str) -> Template:
    """Load and compile a packaged prompt template.

    Args:
        name: Template name without extension (e.g. "implementer")
    """
    content = resources.files("stackloop").joinpath("templates", f"{name}.md").read_text()
    return Template(content, keep_trailing_newline=True)


def render(name: str, **context: Any) -> str:
    return load_template(name).render(**context)


def truncate_diff(diff: str, head: int = DIFF_HEAD_LINES, tail: int = DIFF_TAIL_LINES) -> str:
    """Keep the start and end of a long diff."""
    lines = diff.splitlines()
    if len(lines) <= head + tail:
        return diff
    return "\n".join(lines[:head] + ["..."] + lines[-tail:])


def extract_acceptance(details: str, max_lines: int = 20) -> str:
    """Pull the "Acceptance Criteria" section out of task details.

    The section starts at a line (or markdown heading) beginning with
    "Acceptance Criteria" and ends at the next heading.
    """
    lines = details.splitlines()
    for i, line in enumerate(lines):
        if line.strip().lstrip("#").strip().lower().startswith("acceptance criteria"):
            section = [line]
            for follow in lines[i + 1:]:
                if follow.lstrip().startswith("#") or re.match(r"^[A-Z][A-Za-z ]+:\s*$", follow):
                    break
                section.append(follow)
            return "\n".join(section[:max_lines])
    return ""


def build_implementer_prompt(task: Any, branch: str, validate_cmd: str,
                             excluded_paths: Iterable[str]) -> str:
    return render(
        "implementer",
        task=task,
        branch=branch,
        validate_cmd=validate_cmd,
        excluded_paths=list(excluded_paths),
    )


def build_checker_prompt(task: Any, diffstat: str, diff: str, validate_cmd: str) -> str:
    return render(
        "checker",
        task=task,
        diffstat=diffstat,
        diff=truncate_diff(diff),
        validate_cmd=validate_cmd,
    )


def build_repair_prompt(task: Any, check: Any) -> str:
    return render(
        "repair",
        task=task,
        check=check,
        check_json=json.dumps(check.model_dump(), indent=2),
    )


def build_review_prompt(task: Any, diff: str, depth: str = "standard", context: str = "") -> str:
    return render(
        "review",
        task=task,
        diff=diff,
        depth=depth,
        acceptance=extract_acceptance(task.details),
        context=context,
    )


def build_review_fix_prompt(task: Any, review: Any) -> str:
    return render("review_fix", task=task, review=review)


def build_classifier_prompt(step: str, exit_code: int, error_output: str, context: dict,
                            classes: List[Tuple[str, str]], actions: List[Tuple[str, str]]) -> str:
    tail = "\n".join(error_output.rstrip().splitlines()[-ERROR_TAIL_LINES:])
    return render(
        "classifier",
        step=step,
        exit_code=exit_code,
        error_output=tail,
        context_json=json.dumps(context, indent=2, default=str),
        classes=classes,
        actions=actions,
    )
