"""
=====================================================
Dynamic AI Calling Platform - Spoken Responses
=====================================================
Fixed lines for degraded paths, spoken renderings of function results,
and end-of-call detection.
"""

import re
from datetime import date
from typing import List, Optional

from services.calendar import AvailabilitySlot
from services.functions import FunctionResult
from .prompts import PLACEHOLDER_RE


# A live call always gets one of these when everything else fails
FALLBACK_GREETING = "Hello! I'm here to help you. How can I assist you today?"
FALLBACK_REPLY = "I'm sorry, I'm having trouble understanding. Could you please repeat that?"
RETRY_PROMPT = "I'm sorry, I lost track of our conversation for a moment. Could you please say that again?"
LOW_CONFIDENCE_PROMPT = "I didn't catch that clearly. Could you please repeat what you said?"
LAST_RESORT_REPLY = "I'm sorry, something went wrong on our end. Please call back later."
CLOSING_LINE = "Thank you for calling. Have a great day, goodbye!"

COMPLETION_PHRASES = [
    "goodbye",
    "thank you",
    "have a great day",
    "talk to you later",
    "see you later",
    "bye",
    "farewell",
    "appointment confirmed",
    "booking confirmed",
    "call completed",
]

_BYE_RE = re.compile(r"\bbye\b")


def strip_placeholders(text: str) -> str:
    """Drop any {{placeholder}} a model reply leaked"""
    cleaned = PLACEHOLDER_RE.sub("", text or "")
    return re.sub(r"[ \t]{2,}", " ", cleaned).strip()


def contains_closing_phrase(text: str) -> bool:
    """Legacy heuristic: any closing phrase in the lowercased reply"""
    lowered = (text or "").lower()
    for phrase in COMPLETION_PHRASES:
        if phrase == "bye":
            if _BYE_RE.search(lowered):
                return True
        elif phrase in lowered:
            return True
    return False


def is_conversation_complete(text: str, structured_signal: bool = False) -> bool:
    """
    Decide whether this reply ends the call

    The model's end_call / conversation_complete signal wins; the phrase
    heuristic is a safety net for models that only say goodbye.
    """
    if structured_signal:
        return True
    return contains_closing_phrase(text)


def _join(items: List[str]) -> str:
    if len(items) <= 1:
        return "".join(items)
    return ", ".join(items[:-1]) + " and " + items[-1]


def _spoken_day(iso_day: Optional[str]) -> str:
    if not iso_day:
        return "that day"
    day = date.fromisoformat(iso_day)
    return f"{day.strftime('%A, %B')} {day.day}"


def _spoken_time(slot: AvailabilitySlot) -> str:
    hour = slot.start_time.strftime("%I").lstrip("0") or "12"
    return f"{hour}:{slot.start_time.strftime('%M %p')}"


def render_availability(result: FunctionResult) -> str:
    if not result.success:
        if result.error and "date" in result.error.lower() and "attempts" not in result.error.lower():
            return "Which date would you like me to check?"
        return "I'm sorry, I couldn't check the calendar right now. Could you give me a moment and ask again?"

    data = result.data
    slots = [AvailabilitySlot.from_dict(s) for s in data.get("slots", [])]
    day = _spoken_day(data.get("date"))

    if data.get("requested_time_available"):
        return f"Good news, {slots[0].formatted} is available. Would you like me to book it for you?"

    if not slots:
        return f"I'm sorry, there are no openings on {day}. Would you like me to check another day?"

    times = _join([_spoken_time(s) for s in slots[:3]])
    if data.get("requested_time_available") is False:
        return f"I'm sorry, that time isn't free on {day}. The closest openings are {times}. Would any of those work?"
    return f"On {day} I have openings at {times}. Which time works best for you?"


def render_booking(result: FunctionResult) -> str:
    data = result.data
    if result.success:
        return (
            f"All set, your appointment for {data.get('formatted', 'that time')} is booked. "
            "Appointment confirmed. Have a great day!"
        )

    error = (result.error or "").lower()
    if "not available" in error or "no longer" in error or "taken" in error:
        return "I'm sorry, that time is no longer available. Would you like me to check other times?"
    if "no time selected" in error:
        return "Which time would you like me to book?"
    if "attempts" in error or "timed out" in error:
        return "I'm sorry, I couldn't reach the booking system just now. Would you like me to try again?"
    return f"I'm sorry, I wasn't able to book that: {result.error}. Would you like to try a different time?"


def render_function_result(name: str, result: FunctionResult, model_text: Optional[str] = None) -> str:
    """
    Speak a function result

    Args:
        name: Function that ran
        result: Its outcome
        model_text: Any text the model sent alongside the call

    Returns:
        One or two sentences for the caller
    """
    if result.attempts == 0 and not result.success:
        return "I'm sorry, I can't help with that right now. Is there anything else I can do for you?"

    if name == "check_availability" or "slots" in result.data:
        return render_availability(result)

    if name == "book_appointment" or "booking_id" in result.data:
        return render_booking(result)

    if name == "end_call":
        return strip_placeholders(model_text or "") or CLOSING_LINE

    if name == "send_sms":
        if result.success:
            return "I've sent that to your phone by text message. Is there anything else I can help with?"
        return "I'm sorry, I wasn't able to send the text message. Is there anything else I can help with?"

    if name == "get_current_time" and result.success:
        return f"It's currently {result.data.get('formatted')}."

    if name == "format_date" and result.success:
        return f"That's {result.data.get('formatted')}."

    if result.success:
        message = result.data.get("message") or model_text
        return strip_placeholders(message or "") or "Done. Is there anything else I can help you with?"

    return "I'm sorry, I wasn't able to complete that. Is there anything else I can help you with?"
