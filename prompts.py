"""Prompts sent to the computer-use agent"""
from config import DisplayConfig


def get_instruction_prompt(instruction: str, website_url: str, display: DisplayConfig) -> str:
    """First user turn: the task, the site under test and the ground rules."""
    return f"""You are controlling a web browser to test features on {website_url}.

The browser is already open and displaying the website. Please execute this instruction:

"{instruction}"

Guidelines:
- Take screenshots frequently to show progress
- Be thorough but efficient
- If you encounter errors, try alternative approaches
- Explain what you're doing at each step
- Focus only on {website_url} - do not navigate away
- The display resolution is {display.width}x{display.height}
- When the instruction is fully carried out, reply with a short summary and no tool call

Current browser status: Open and displaying {website_url}"""


def get_system_prompt(supports_shell: bool) -> str:
    """System prompt describing the tools available for this backend."""
    lines = [
        "You are a meticulous QA tester operating a real browser through screenshots and mouse/keyboard actions.",
        "Use at most one tool call per response. Coordinates are pixels on the screenshot you were given.",
    ]
    if supports_shell:
        lines.append(
            "The browser runs inside a Linux container; you may also run shell commands and edit files there."
        )
    else:
        lines.append("Only screen actions are available; there is no shell access.")
    return "\n".join(lines)


def get_situational_prompt(iteration: int) -> str:
    if iteration == 1:
        return "Here is the current screenshot. Please proceed with the instruction."
    return "Here is the updated screenshot. Please continue."


SCREENSHOT_UNAVAILABLE = "The screenshot could not be captured this time: {error}. Please continue."
