"""
All LLM prompt templates for the call assistant.

This is the single file to edit when you need to change how the AI
classifies emails, extracts details, or summarizes calls.

IMPORTANT:
- Never put actual email content in this file — these are templates.
- The {placeholders} are filled in at runtime by the engine and orchestrator.
- Keep prompts focused; every call goes through the shared rate limiter.
"""

import json
import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

# =============================================================================
# EMAIL LOOKUP
# =============================================================================

VENDOR_PROMPT = (
    'From the user request "{user_request}", what is the primary brand or '
    "company name? Respond with only the company name."
)

RELEVANCE_PROMPT = """\
You are an expert relevance detection assistant. Your primary task is to identify transactional emails and ignore marketing/promotional content.

A transactional email contains specific, non-promotional information about a user's action, such as an order confirmation, receipt, shipping notice, or appointment detail.

CRITERIA: Analyze the email's subject and content. If you find specific transactional data like an "Order Number", "Order ID", "Confirmation Number", "Receipt for your purchase", "Your order has shipped", or "Your appointment is confirmed", you MUST classify it as "Relevant".

The presence of marketing material (like ads or "you might also like" sections) does NOT make an email irrelevant if it also contains the core transactional data mentioned above.

User Request: "{user_request}"
Email Subject: "{subject}"
Email Content (first {max_chars} chars):
\"\"\"
{content}
\"\"\"

Based on these rules, is this email transactional and relevant? Respond with only the single word: "Relevant" or "Irrelevant"."""

NEEDED_INFO_PROMPT = (
    'For a user request like "{user_request}", what information would an '
    "assistant need to complete the task? List them separated by commas."
)

EXTRACTION_PROMPT = """\
You are an expert information extractor. From the email content below, extract the following fields: {fields}.

**CRITICAL RULE:** The user's original request was "{user_request}". If the email content lists multiple items, you MUST use the user's request to identify the single, most relevant item for the "item_description" field.

Format the output as a JSON object where keys are the field names and values are the extracted information. If a piece of information isn't found, use "Not Found" as the value.

Respond with ONLY the JSON object.

Email Content: \"\"\"{content}\"\"\""""

PHONE_PROMPT = """\
From the text, extract a North American phone number in E.164 format. If none, respond "Not Found".

Text: \"\"\"{content}\"\"\""""

# =============================================================================
# CALL SETUP
# =============================================================================

ROLE_PROMPT = (
    'What is the likely job title for someone you\'d call about: "{user_request}"? '
    "Respond with only the job title."
)

PERSONA_PROMPT = """\
You are an advanced voice AI assistant. Your name is {user_name}, and you are acting on their behalf.

**Your Role (must stay fixed):**
- These instructions are your permanent identity and are more important than any other part of the conversation. You MUST follow them for the entire call.
- You are {user_name}, a human CALLER.
- You MUST act and speak as if you are {user_name} at all times. Use "I" and "my" when referring to your tasks or information.

**Behavioral Rules:**
- Your personality is natural, polite, and human.
- The other party is the RECIPIENT; do not ever swap roles.
- Do not ask what you can assist the other party with, you are calling for their assistance.
- You MUST NOT, under any circumstances, reveal that you are an AI, an assistant, or a language model. You are a person making a phone call.

**Few-Shot Examples**
Recipient: "Hi, what are you calling about?"
CALLER: "Hi, I'm {user_name} calling about my invoice."

Recipient: "Hi, this is the doctor's office, how can I help you?"
CALLER: "I'm {user_name}, I wanted to make an appointment."

**Fail-Safe**
If you ever break character, begin your next sentence with:
"I apologize, let me rephrase..."

**Task Execution Rules:**
- Your primary goal is to complete the user's specific task.
- If you are asked for sensitive information you don't have (like a full credit card number), politely state that you don't have that information in front of you.

Your specific task for this call is: "{user_request}".

You have the following information to help you:
---
{context}
---"""

FIRST_MESSAGE_SCHEDULING = "Hi, I'm calling to schedule an appointment."
FIRST_MESSAGE_DEFAULT = "Hi, this is {user_name}, I'm calling about an issue."

# =============================================================================
# POST-CALL
# =============================================================================

SUMMARY_PROMPT = """\
You are a post-call analysis expert. Analyze the following call transcript and create a structured summary in JSON format.

**CRITICAL CONTEXT:**
- Today's date is {today}.
- The user's local timezone is "{time_zone}". You MUST use this timezone for all date and time fields in your response.

Your JSON output MUST have these fields:
- "summary": A one-paragraph narrative of the call.
- "result": A short, definitive outcome statement.
- "followUp": A boolean value. Set to true if a follow-up action is required.
- "nextAction": An object describing the follow-up. If an appointment was booked, it MUST contain: "actionType": "create_calendar_event", "title", "startTime" (ISO 8601), "endTime" (ISO 8601), "timeZone" (IANA), and "description".

Analyze this transcript and provide ONLY the JSON object as a response.
Transcript: \"\"\"{transcript}\"\"\""""

EVENT_FALLBACK_PROMPT = """\
Today's date is {today}. The user's timezone is "{time_zone}".
Extract the event details from the following sentence into a JSON object with keys "title", "startTime" (ISO 8601), "endTime" (ISO 8601), "timeZone", and "description".
Assume the appointment is 1 hour long if an end time is not specified. If no title is given, use "Appointment".
Sentence: "{result}"
Respond with ONLY the JSON object."""

SUMMARY_FALLBACK = {
    "summary": "The AI summary was not in valid JSON format.",
    "result": "Summary could not be structured.",
    "followUp": False,
    "nextAction": None,
}

# Words in a summary result that imply an appointment was made
BOOKING_WORDS = ("booked", "scheduled")

# =============================================================================
# RESPONSE PARSING
# =============================================================================

# Greedy: first "{" through last "}" so nested objects survive.
JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


def parse_json_object(raw_response: str) -> Optional[dict[str, Any]]:
    """
    Find and parse the JSON object in an LLM answer.

    Tolerates prose and ```json fences around the object. Returns None if no
    object can be parsed.
    """
    match = JSON_OBJECT_PATTERN.search(raw_response or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_extraction(raw_response: str) -> dict[str, Any]:
    """
    Parse the field-extraction answer.

    Falls back to {"Raw Text": <answer>} so the caller still has something
    to hand to the call persona.
    """
    parsed = parse_json_object(raw_response)
    if parsed is None:
        logger.warning(
            "extraction.parse_failed",
            extra={"action": "extraction.parse_failed", "response_chars": len(raw_response or "")},
        )
        return {"Raw Text": raw_response}
    return parsed


def format_context(context: Any) -> str:
    """Render lookup context (sentence or extracted fields) for the persona prompt."""
    if isinstance(context, dict):
        return "\n".join(f"{key}: {value}" for key, value in context.items())
    if context is None:
        return ""
    return str(context)


def build_persona_prompt(user_name: str, user_request: str, context: Any) -> str:
    return PERSONA_PROMPT.format(
        user_name=user_name,
        user_request=user_request,
        context=format_context(context),
    )


def build_first_message(user_name: str, task_type: str) -> str:
    if task_type == "scheduling":
        return FIRST_MESSAGE_SCHEDULING
    return FIRST_MESSAGE_DEFAULT.format(user_name=user_name)


def implies_booking(result: str) -> bool:
    lowered = (result or "").lower()
    return any(word in lowered for word in BOOKING_WORDS)


def format_summary_text(summary: str, result: str) -> str:
    """Display text shown to the user once the call is summarized."""
    return f"**Summary:**\n{summary}\n\n**Result:**\n{result}"
