"""Doubt answer prompt: CLAT tutor drafting a first reply to a student doubt.

The prompt embeds the doubt's title, subject, description and difficulty.
The reply is stored as an AI-authored response in the doubt thread.
"""

from __future__ import annotations

DOUBT_ANSWER_SYSTEM_PROMPT = """\
You are a CLAT (Common Law Admission Test) tutor helping a law aspirant.
Write in clear, plain English and stay within the scope of CLAT preparation.
If you are not sure about a legal point, say so instead of guessing.
"""

DOUBT_ANSWER_PROMPT = """\
Student's Question:
Title: {title}
Subject: {subject}
Description: {description}
Difficulty Level: {difficulty_level}/5

Please provide a comprehensive, helpful response that:
1. Directly addresses their question
2. Provides clear explanations with examples
3. Includes relevant case laws or legal principles if applicable
4. Suggests additional study resources
5. Is encouraging and supportive

Keep the response educational, accurate, and appropriate for CLAT preparation."""


def build_doubt_answer_prompt(
    *,
    title: str,
    subject: str,
    description: str,
    difficulty_level: int,
) -> str:
    """Render the user prompt for a single doubt."""
    return DOUBT_ANSWER_PROMPT.format(
        title=title.strip(),
        subject=subject.strip(),
        description=description.strip(),
        difficulty_level=difficulty_level,
    )
