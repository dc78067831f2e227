"""Prompt texts for the build, refinement, planning, review and verification agents.

Each agent prompt has a built-in default. A directory of markdown overrides
(``<name>.md``, optional YAML front matter is stripped) can replace any of
them without code changes.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_FRONT_MATTER_RE = re.compile(r"\A---\r?\n.*?\r?\n---\r?\n*", re.DOTALL)

REVIEWER_PROMPT = """You are a strict senior code reviewer. A developer agent claims that
every success criterion of the task below has been met. Your job is to find out
whether that is true.

You may read files and run commands, but you must not modify anything.

1. Read the code that implements the task.
2. Run the project's type checker, linter and test suite if they exist.
3. Check every success criterion against what is actually implemented.
4. Look for obvious bugs, missing error handling and unfinished work.

Be concrete: name files, functions and failing commands.

Finish your response with exactly one verdict line:

## VERDICT: PASS

or

## VERDICT: FAIL

followed (on FAIL) by a numbered list of the problems that must be fixed."""

VERIFIER_BROWSER_PROMPT = """You are a black-box QA tester. You can only interact with the
running application through the browser tools. You cannot read source code.

Open the entry point URL, then exercise every success criterion of the task the
way a real user would: navigate, click, fill in forms, and check what is shown.
Try at least one unhappy path per feature. Do not trust claims in the task
description; verify them.

Finish your response with exactly one verdict line:

## VERDICT: PASS

or

## VERDICT: FAIL

followed (on FAIL) by the exact steps that reproduce each problem."""

VERIFIER_CLI_PROMPT = """You are a black-box QA tester. You can only run the allowed commands.
You cannot read source code.

Exercise every success criterion of the task by running the allowed commands
with realistic arguments and inputs. Check exit codes and output. Try invalid
input and edge cases too. Do not trust claims in the task description; verify
them.

Finish your response with exactly one verdict line:

## VERDICT: PASS

or

## VERDICT: FAIL

followed (on FAIL) by the exact commands that reproduce each problem."""

PLANNER_PROMPT = """You are breaking a task down into bite-sized steps for an agent that
works in iterations, each with a fresh context window. The session file is the
only memory shared between iterations.

Edit the session file in place. Keep the YAML front matter and the Task section
exactly as they are, and add these sections below the Task:

## Status: IN_PROGRESS

## Completed

(none yet)

## Remaining

- [ ] Step 1 - specific and actionable
- [ ] Step 2 - specific and actionable
- [ ] Final verification - run tests, check every success criterion

## Verification

- mode: browser | cli | none
- entry: URL for browser mode, or comma-separated command prefixes for cli mode
- start: optional command that starts the application for testing
- stop: optional cleanup command

## Notes

Decisions, constraints and context for future iterations.

Guidelines:
- Each step should fit in a single iteration.
- Order steps so dependencies come first and verification comes last.
- Pick the verification mode that lets a black-box tester exercise the result:
  browser for web UIs, cli for command line tools, none when neither applies."""

REFINER_PROMPT = """You are sharpening the task description of a session before it is planned
and handed to an agent that works in iterations, each with a fresh context
window. Nobody can answer questions, so resolve ambiguity from the codebase and
state your assumptions.

Edit the session file in place. Keep the YAML front matter exactly as it is and
only rewrite the content of the `## Task` section. Use `###` headings inside it:

### Objective

What to accomplish and why, in one or two specific paragraphs.

### Success Criteria

- [ ] Specific, objectively verifiable criterion (tests pass, command succeeds)
- [ ] ...

### Context

Frameworks, existing code patterns, relevant file paths and constraints found
in the working directory.

### Assumptions

Decisions you made where the request was ambiguous.

Guidelines:
- Keep the original intent; make it explicit, never broader.
- Be explicit about what "done" looks like.
- Do not touch any other section of the session file."""

ITERATION_INSTRUCTIONS = """Work autonomously and make meaningful progress this iteration. Before finishing:

1. Update the session file with your progress:
   - Move finished steps to `## Completed`
   - Keep `## Remaining` as the concrete list of next steps
   - Add anything future iterations must know to `## Notes`

2. Set the status line:
   - `## Status: DONE` only when ALL success criteria are met and verified
   - `## Status: BLOCKED` when you need human input to proceed
   - `## Status: IN_PROGRESS` otherwise

3. Never edit the YAML front matter at the top of the session file. It is
   managed by the loop and your changes to it are discarded.

A DONE claim is checked by a code reviewer and a black-box tester. If they find
problems, their feedback is appended to the session file. Address every point
of the most recent feedback before claiming DONE again."""

DEFAULT_PROMPTS = {
    "reviewer": REVIEWER_PROMPT,
    "verifier-browser": VERIFIER_BROWSER_PROMPT,
    "verifier-cli": VERIFIER_CLI_PROMPT,
    "planner": PLANNER_PROMPT,
    "refiner": REFINER_PROMPT,
}

_prompt_cache: dict[tuple[Optional[Path], str], str] = {}


def load_agent_prompt(name: str, override_dir: Optional[Path] = None) -> str:
    """Load an agent prompt, preferring ``<override_dir>/<name>.md``.

    Args:
        name: Prompt name, e.g. ``reviewer`` or ``verifier-cli``.
        override_dir: Optional directory of markdown overrides.

    Returns:
        Prompt text.

    Raises:
        KeyError: If there is neither an override nor a built-in prompt.
    """
    key = (override_dir, name)
    if key in _prompt_cache:
        return _prompt_cache[key]

    prompt = None
    if override_dir is not None:
        path = Path(override_dir) / f"{name}.md"
        if path.is_file():
            text = path.read_text(encoding="utf-8")
            prompt = _FRONT_MATTER_RE.sub("", text, count=1).strip()
            logger.debug(f"Loaded prompt override {path}")

    if prompt is None:
        prompt = DEFAULT_PROMPTS[name]

    _prompt_cache[key] = prompt
    return prompt


def clear_prompt_cache() -> None:
    """Forget cached prompts (used when override files change)."""
    _prompt_cache.clear()


def build_iteration_prompt(
    session_path: Path,
    session_content: str,
    iteration: int,
    max_iterations: int,
    message: Optional[str] = None,
) -> str:
    """Build the build agent's prompt for one iteration."""
    parts = [
        f"<session file=\"{session_path}\">\n{session_content.strip()}\n</session>",
        "<context>\n"
        "You are working on a multi-iteration task. Each iteration starts with a fresh "
        "context window; your work persists through the filesystem and the session file "
        f"above. This is iteration {iteration} of at most {max_iterations} in this run.\n"
        "</context>",
    ]
    if message:
        parts.append(f"<operator_message>\n{message.strip()}\n</operator_message>")
    parts.append(f"<instructions>\n{ITERATION_INSTRUCTIONS}\n</instructions>")
    return "\n\n".join(parts)


def build_plan_prompt(session_path: Path, session_content: str, working_dir: Path) -> str:
    """Build the planning agent's user prompt."""
    return (
        f"Working directory: {working_dir}\n\n"
        f"Session file: {session_path}\n\n"
        f"<session>\n{session_content.strip()}\n</session>\n\n"
        "Analyze the task and the codebase, then edit the session file to add the plan."
    )


def build_refine_prompt(
    session_path: Path,
    session_content: str,
    working_dir: Path,
    guidance: Optional[str] = None,
    refinement: int = 1,
    total: int = 1,
) -> str:
    """Build the refinement agent's user prompt for one pass."""
    parts = [
        f"Working directory: {working_dir}",
        f"Session file: {session_path}",
        f"<session>\n{session_content.strip()}\n</session>",
    ]
    if guidance:
        parts.append(f"<operator_message>\n{guidance.strip()}\n</operator_message>")
    parts.append(
        f"This is refinement pass {refinement} of {total}. "
        "Rewrite the Task section so a fresh agent knows exactly what done looks like."
    )
    return "\n\n".join(parts)


def build_gate_user_prompt(task: str, completed: str, kind: str) -> str:
    """Build the user prompt shared by the reviewer and verifier."""
    if kind == "review":
        closing = (
            "Now review the implementation. Run type-checking, linting, and tests. "
            "Verify completeness against the task description. Check for obvious bugs."
        )
    else:
        closing = (
            "Now test this thoroughly through the allowed interface. "
            "Be skeptical and verify every claim."
        )
    return (
        "ALL success criteria are claimed to be met.\n\n"
        f"## Task Description\n{task}\n\n"
        f"## What Was Completed\n{completed or '(Nothing marked as completed yet)'}\n\n"
        f"{closing}"
    )
