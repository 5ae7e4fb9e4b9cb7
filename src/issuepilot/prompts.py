from __future__ import annotations

from issuepilot.models import RuntimeStatus


DEFAULT_PROMPT_NAME = "default"
REVIEW_FEEDBACK_PROMPT_NAME = "review_feedback"


def build_default_prompt() -> str:
    return """
You are an AI software development agent. Your task is to solve the following GitHub issue.

## Issue
Title: {{issue_title}}

{{#if issue_body}}
Description:
{{issue_body}}
{{/if}}

{{#if additional_context}}
Additional Context:
{{additional_context}}
{{/if}}

## Instructions
1. First, explore the codebase to understand the structure and relevant files.
2. Analyze the issue and determine what changes are needed.
3. Implement the solution, following the existing code style and patterns.
4. Test your changes if appropriate (run tests, lint, etc.).
5. Commit your changes with a descriptive commit message.
6. When complete, respond with "DONE" and a summary of what was done.

## Important Notes
- Write clean, maintainable code that follows the project's conventions.
- Add appropriate error handling and edge case considerations.
- If you need to install dependencies, do so.
- If the issue is unclear, make reasonable assumptions and document them.

Begin working on this issue now.
""".strip()


def build_review_feedback_prompt() -> str:
    return """
You received feedback on your pull request. Please address the feedback and make necessary changes.

## Feedback
{{feedback}}

## Instructions
1. Read and understand the feedback.
2. Make the necessary changes to address the feedback.
3. Test your changes if applicable.
4. Commit the changes with a message like "Address review feedback: [summary]".
5. When complete, respond with "DONE" and a summary of what was changed.

Begin addressing the feedback now.
""".strip()


def default_prompts() -> tuple[tuple[str, str], ...]:
    return (
        (DEFAULT_PROMPT_NAME, build_default_prompt()),
        (REVIEW_FEEDBACK_PROMPT_NAME, build_review_feedback_prompt()),
    )


def already_active_comment() -> str:
    return "🔄 This issue is already being handled by an agent."


def capacity_full_comment(*, queue_position: int) -> str:
    return (
        f"🕐 All agent slots are full. Queue position: #{queue_position}. "
        "Comment the trigger phrase again once a slot frees up."
    )


def starting_comment(*, branch_name: str) -> str:
    return (
        "🚀 Starting agent for this issue...\n\n"
        f"- Branch: `{branch_name}`\n"
        "- Status: Initializing container"
    )


def start_failed_comment(*, error: str) -> str:
    return f"❌ Failed to start agent: {error}\n\nPlease check the orchestrator logs."


def completion_comment(*, pr_number: int) -> str:
    return (
        f"✅ Agent completed for this issue. PR #{pr_number} has been closed "
        "and container cleaned up."
    )


def feedback_comment(*, body: str) -> str:
    return f"📝 Feedback received:\n\n{body}\n\nAgent will iterate on the changes."


def runtime_crash_comment(*, runtime_status: RuntimeStatus) -> str:
    return (
        "❌ Agent encountered an error and stopped.\n\n"
        f"Container status: {runtime_status}\n\n"
        "Please check the issue or try triggering the agent again."
    )


def aborted_comment(*, reason: str) -> str:
    return f"🛑 Agent stopped: {reason}"


def work_failed_comment(*, error: str) -> str:
    return f"❌ Agent reported a failure: {error}\n\nPlease check the orchestrator logs."
