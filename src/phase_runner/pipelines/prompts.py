"""Build the text prompts sent to agent sessions and parse their JSON replies."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from ..models import PhaseContext, Story, Task

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n\s*```", re.DOTALL)


def extract_json(text: str) -> Optional[dict[str, Any]]:
    """Pull the last JSON object out of agent text, preferring fenced blocks."""
    for block in reversed(_FENCED_JSON_RE.findall(text or "")):
        try:
            data = json.loads(block)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    text = (text or "").strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _numbered(items: list[str], empty: str = "None specified") -> str:
    if not items:
        return empty
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1))


def build_analysis_prompt(task: Task) -> str:
    return f"""# Analyze the Task

## Task
**{task.title}**

{task.description or "(no further description)"}

## Your Mission
Read the repository, understand how this task fits the existing code, and split
the work into small, independently implementable stories. Do NOT modify files.

## Required Output Format
Output a JSON block:

```json
{{
  "summary": "<brief summary of the change>",
  "approach": "<implementation approach>",
  "risks": ["<risk 1>", "<risk 2>"],
  "stories": [
    {{
      "id": "story-1",
      "title": "<short title>",
      "description": "<what to implement>",
      "acceptance_criteria": ["<criterion>"]
    }}
  ]
}}
```
"""


def build_story_prompt(story: Story, index: int, total: int) -> str:
    return f"""# Story Implementation ({index + 1}/{total})

## Story Details
- **ID**: {story.id}
- **Title**: {story.title}
- **Description**: {story.description or "(none)"}

## Acceptance Criteria
{_numbered(story.acceptance_criteria)}

## Your Mission
Implement ONLY this story. Follow existing code patterns, keep the change
focused, and add or update tests where needed.

## Output
When done, summarize which files changed and whether each criterion is met.
"""


def build_judge_prompt(context: PhaseContext) -> str:
    stories = "\n".join(f"- {s.title}" for s in context.stories) or "- (no stories recorded)"
    criteria = [c for s in context.stories for c in s.acceptance_criteria]
    return f"""# Evaluate the Implementation

Review the changes on the current branch for task "{context.task.title}".

## Stories
{stories}

## Acceptance Criteria to Check
{_numbered(criteria)}

## Evaluation Checklist
1. **Correctness**: does the code work?
2. **Completeness**: are all acceptance criteria met?
3. **Code Quality**: does it follow the project's patterns?
4. **Security**: any injection, secrets or unsafe input handling?
5. **Tests**: were tests added or updated where needed?

## Required Output Format
Output a JSON block with your verdict:

```json
{{
  "verdict": "approved" | "needs_revision" | "rejected",
  "score": 0-100,
  "summary": "<brief evaluation summary>",
  "issues": [
    {{
      "severity": "critical" | "major" | "minor",
      "file": "<file path>",
      "description": "<issue description>",
      "suggestion": "<how to fix>"
    }}
  ]
}}
```

Guidelines:
- "approved" (score >= 80): all criteria met, no critical or major issues
- "needs_revision" (50-79): has fixable issues
- "rejected" (< 50): fundamental problems
"""


def build_fix_prompt(issues: list[dict[str, Any]]) -> str:
    lines = []
    for i, issue in enumerate(issues, 1):
        severity = str(issue.get("severity") or "minor").upper()
        where = f" ({issue['file']})" if issue.get("file") else ""
        lines.append(f"{i}. [{severity}]{where} {issue.get('description') or ''}".rstrip())
        if issue.get("suggestion"):
            lines.append(f"   Suggestion: {issue['suggestion']}")
    listing = "\n".join(lines) or "No specific issues were listed; address the summary above."
    return f"""# Fix the Implementation Issues

The implementation was evaluated and needs fixes. Address these issues:

{listing}

Fix ALL issues, then summarize what changed.
"""
