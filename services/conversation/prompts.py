"""
=====================================================
Dynamic AI Calling Platform - Prompt Building
=====================================================
System prompt = the agent's own prompt + a live context block +
conversation guidelines. Agent prompts may use {{placeholders}}
(agent_name, customer_name, customer_phone, current_date, current_time);
unknown ones are removed so they are never spoken.
"""

import re
from datetime import datetime
from typing import Dict, Optional

from services.agents import AgentConfig


PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")

DEFAULT_AGENT_PROMPT = (
    "You are a friendly phone assistant. Help the caller with their questions "
    "and book appointments when asked."
)

CONVERSATION_GUIDELINES = """CONVERSATION GUIDELINES:
- Be natural and conversational
- Follow the personality and instructions defined in your prompt
- Keep responses concise but helpful (this is a phone call: one to three sentences)
- If you don't understand something, ask for clarification
- Be polite and professional
- Remember the context of the conversation
- Use check_availability before book_appointment, and only book after the caller confirms
- When the caller is done, say goodbye and call end_call"""

GREETING_INSTRUCTION = (
    "IMPORTANT: This is the first message of the conversation. Provide a warm, friendly "
    "greeting that introduces yourself and asks how you can help."
)

TURN_INSTRUCTION = (
    "IMPORTANT: Respond naturally to the user's input. Be helpful, engaging, and follow "
    "the personality and instructions defined in your prompt."
)


def render_template(text: str, values: Dict[str, Optional[str]]) -> str:
    """Fill {{placeholders}}; unknown or empty ones are removed"""
    def replace(match: re.Match) -> str:
        value = values.get(match.group(1))
        return str(value) if value else ""

    rendered = PLACEHOLDER_RE.sub(replace, text or "")
    return re.sub(r"[ \t]{2,}", " ", rendered).strip()


def has_placeholders(text: str) -> bool:
    return bool(PLACEHOLDER_RE.search(text or ""))


def template_values(agent: AgentConfig, customer_name: Optional[str],
                    customer_phone: Optional[str], now: datetime) -> Dict[str, Optional[str]]:
    return {
        "agent_name": agent.name,
        "agent_description": agent.description,
        "customer_name": customer_name,
        "customer_phone": customer_phone,
        "current_date": now.strftime("%A, %B %d, %Y"),
        "current_time": now.strftime("%I:%M %p"),
    }


def build_system_prompt(agent: AgentConfig, customer_name: Optional[str] = None,
                        customer_phone: Optional[str] = None,
                        now: Optional[datetime] = None) -> str:
    """
    Compose the system prompt for a call

    Args:
        agent: Agent driving the call
        customer_name: Caller name, if known
        customer_phone: Caller number, if known
        now: Current local time

    Returns:
        Prompt text with every placeholder resolved
    """
    now = now or datetime.now()
    values = template_values(agent, customer_name, customer_phone, now)

    lines = [
        render_template(agent.prompt or DEFAULT_AGENT_PROMPT, values),
        "",
        "CONTEXT INFORMATION:",
        f"- Current date: {values['current_date']} ({now.date().isoformat()})",
        f"- Current time: {values['current_time']}",
        f"- Agent name: {agent.name}",
        f"- Agent description: {agent.description or 'No description provided'}",
    ]
    if customer_name:
        lines.append(f"- Customer name: {customer_name}")
    if customer_phone:
        lines.append(f"- Customer phone: {customer_phone}")

    lines.extend(["", CONVERSATION_GUIDELINES])
    return "\n".join(lines)
