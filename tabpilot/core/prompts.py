from tabpilot.llm.types import ToolSpec

APPROVAL_GUIDANCE = (
    'Set it to "true" for purchases, data deletion, messages visible to others, '
    'sensitive-data forms, or any risky action. If unsure, set it to "true".'
)

TOOL_CALL_FORMAT = """<tool>tool_name</tool>
<input>arguments here</input>
<requires_approval>true or false</requires_approval>"""

BASE_SYSTEM_PROMPT = """You are tabpilot, a browser-automation assistant. You complete the user's task by calling tools one at a time and reading each result before deciding the next step.

## TOOLS

{tools}{page_context}

## WORKFLOW

1. Identify the domain you are working on. Navigate first if there is no current page.
2. Call lookup_memories with that domain when it is available, and read the result before acting.
3. If a remembered tool sequence fits the request, replay it, copying selectors and arguments verbatim.
4. Observe the page before acting. Describe what you actually see and never assume an element exists.
5. Act, then verify the new state.

## TOOL-CALL SYNTAX

You must call tools in exactly this form, one call per reply:

{tool_call_format}

The <requires_approval> tag is mandatory. {approval_guidance}

Wait for each tool result before the next step. When the task is complete, reply without a tool call and finish with a concise summary."""

PAGE_CONTEXT_TEMPLATE = """

## CURRENT PAGE

{page_context}

If the request continues the previous task, interpret it against this page. If it needs a different website, navigate there."""


def build_system_prompt(tools: list[ToolSpec], page_context: str | None = None) -> str:
    descriptions = "\n\n".join(f"{t.name}: {t.description}" for t in tools) or "(no tools available)"
    return BASE_SYSTEM_PROMPT.format(
        tools=descriptions,
        page_context=PAGE_CONTEXT_TEMPLATE.format(page_context=page_context) if page_context else "",
        tool_call_format=TOOL_CALL_FORMAT,
        approval_guidance=APPROVAL_GUIDANCE,
    )


# --- Loop messages ---

TOOL_RESULT_TEMPLATE = "Tool result: {result}"
DENIED_RESULT = "Action cancelled by user."
UNKNOWN_TOOL_TEMPLATE = 'Error: tool "{name}" not found. Available: {available}'
STEP_LIMIT_MESSAGE = "Stopped: exceeded maximum of {max_steps} steps."
CANCELLED_MESSAGE = "Execution cancelled by user."

MISSING_INPUT_TEMPLATE = """Error: Incomplete tool call. You provided <tool>{name}</tool> but are missing the <input> and <requires_approval> tags. Provide the complete tool call with all three required tags:

<tool>{name}</tool>
<input>arguments here</input>
<requires_approval>true or false</requires_approval>

""" + APPROVAL_GUIDANCE

MISSING_APPROVAL_TEMPLATE = """Error: Incomplete tool call. You provided <tool>{name}</tool> and <input>{input}</input> but are missing the <requires_approval> tag. Provide the complete tool call with all three required tags:

<tool>{name}</tool>
<input>{input}</input>
<requires_approval>true or false</requires_approval>

""" + APPROVAL_GUIDANCE

INTERRUPTED_TEMPLATE = """Error: Your tool call was interrupted. Provide the complete tool call with all three required tags:

<tool>{name}</tool>
<input>arguments here</input>
<requires_approval>true or false</requires_approval>

""" + APPROVAL_GUIDANCE


# --- Memory ---

MEMORY_CONTEXT_TEMPLATE = """Before we start, here are some patterns that worked well for tasks on this website before:

{memories}

You can adapt these patterns to the current task if relevant."""

REFLECTION_SYSTEM_PROMPT = "You distil reusable browser-automation patterns from finished conversations. Reply with JSON only."

REFLECTION_PROMPT = """Analyze the conversation above and identify reusable patterns for accomplishing tasks on {domain}.

For each distinct task that was accomplished, create a memory record with:
1. A short description of the task
2. The optimal sequence of tools used to solve it, one "tool_name | input" entry per step

Reply with valid JSON only, either a single object or an array of objects:
{{
  "domain": "{domain}",
  "task_description": "brief description of the task",
  "tool_sequence": ["tool1 | input1", "tool2 | input2"]
}}

Only include patterns that are new or significantly different from what is already known. Use double quotes, no trailing commas, and escape special characters."""

CORRECTION_PROMPT = """I tried to read your memory records, but the JSON was invalid:

ERROR: {error}

Here is the malformed output:
```
{output}
```

Reply with a corrected version only, following this structure:
{{
  "domain": "{domain}",
  "task_description": "brief description of the task",
  "tool_sequence": ["tool1 | input1", "tool2 | input2"]
}}"""
