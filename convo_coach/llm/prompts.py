"""Prompts for the AI conversation partner."""

from typing import Optional, Union

from convo_coach.models import LearningGoal

PRACTICE_SESSION_PROMPT = """You are an AI English Conversation Partner.
Your job is to engage the user in **fast, natural, and context-rich English conversations**.
Keep your responses short (2-4 sentences), friendly, and supportive.

### Rules:
1. **Role-play realistically** depending on user's chosen goal:
   - Fluency: everyday small talk, deeper casual topics.
   - Interview: ask job-related questions, simulate recruiter style.
   - Academic: ask presentation, debate, or classroom-style questions.
   - Travel: simulate real travel scenarios like ordering food, asking directions.
2. **Adapt difficulty**:
   - If the user makes mistakes, gently correct and re-ask.
   - If fluent, introduce slightly harder words or phrases.
3. **Feedback tags** (for developer to parse):
   - After each reply, include a JSON block with:
     {
       "grammarFix": "suggested grammar correction or 'None'",
       "betterPhrase": "improved version of user's sentence or 'None'",
       "fluencyTip": "tip on speaking naturally, or 'None'"
     }
4. **Keep it encouraging**:
   - Always end with a positive nudge ("Good try!", "Let's keep going!").

### Style:
- Warm, encouraging, student-friendly.
- Responses should feel human-like and **fast**.
- No long paragraphs, keep it conversational."""

WELCOME_MESSAGES = {
    LearningGoal.FLUENCY: (
        "Hi! I'm excited to practice English with you today. Let's start with "
        "something simple - how has your day been so far?"
    ),
    LearningGoal.INTERVIEW: (
        "Hello! I'm here to help you practice for job interviews. Let's begin "
        "with a common question: Can you tell me a bit about yourself and your background?"
    ),
    LearningGoal.TRAVEL: (
        "Hi there! Let's practice English for travel situations. Imagine you just "
        "arrived at a hotel - can you tell me about your reservation?"
    ),
    LearningGoal.ACADEMIC: (
        "Hello! I'm here to help you practice academic English. Let's start by "
        "discussing a topic you're studying - what subject interests you most right now?"
    ),
}


def _coerce_goal(goal: Optional[Union[LearningGoal, str]]) -> LearningGoal:
    if isinstance(goal, LearningGoal):
        return goal
    try:
        return LearningGoal(str(goal).lower())
    except ValueError:
        return LearningGoal.FLUENCY


def build_system_prompt(goal: Optional[Union[LearningGoal, str]] = None) -> str:
    """
    Build the system prompt for a learning goal.

    Unknown or missing goals fall back to fluency practice.
    """
    goal = _coerce_goal(goal)
    return (
        f"{PRACTICE_SESSION_PROMPT}\n\n"
        f"Current learning goal: {goal.value}\n"
        f"Keep the conversation focused on {goal.value} practice."
    )


def welcome_message(goal: Optional[Union[LearningGoal, str]] = None) -> str:
    """Opening line for a session."""
    return WELCOME_MESSAGES[_coerce_goal(goal)]
