from functools import lru_cache
from typing import Optional, Type

import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel

from settings import get_settings
from schemas import InterviewEvaluation, InterviewQuestions

logger = structlog.get_logger(__name__)

QUESTION_COUNT = 5

# --- Model Configuration ---
MODEL_CONFIG = {
    "interview_questions": {"temperature": 0.7, "max_tokens": 1024},
    "interview_evaluation": {"temperature": 0.2, "max_tokens": 1024},
}


@lru_cache()
def get_llm_client() -> AsyncOpenAI:
    """OpenAI-compatible client for the configured provider, built on first use."""
    settings = get_settings()
    if not settings.llm_api_key:
        logger.error("LLM_API_KEY not found in environment variables or .env file.")
        raise ValueError("LLM_API_KEY not found. Ensure it's set in your environment or .env file.")
    return AsyncOpenAI(base_url=settings.llm_base_url, api_key=settings.llm_api_key)


async def call_llm(
    system_prompt: str,
    user_prompt: str,
    model_config: dict,
    response_model: Type[BaseModel],
) -> Optional[BaseModel]:
    """Call the LLM and parse its reply into ``response_model``."""

    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]

    response = await get_llm_client().beta.chat.completions.parse(
        model=get_settings().llm_model,
        messages=messages,
        response_format=response_model,
        **model_config,
    )
    return response.choices[0].message.parsed


def format_transcript(questions: list[str], answers: list[str]) -> str:
    """Pair each question with its answer; unanswered questions are marked."""
    pairs = []
    for i, question in enumerate(questions):
        answer = answers[i] if i < len(answers) and str(answers[i]).strip() else "(no answer)"
        pairs.append(f"Q: {question}\nA: {answer}")
    return "\n\n".join(pairs)


async def generate_interview_questions(resume_text: str, job_description: str) -> list[str]:
    system_prompt = "You are an HR assistant helping evaluate candidates."
    user_prompt = f"""You are an AI interviewer. Using the following resume and job description, generate exactly {QUESTION_COUNT} short, easy interview questions that assess technical and behavioral fit.

Resume:
{resume_text}

Job Description:
{job_description}

Return only the questions, without numbering, introduction, explanation or summary."""

    result = await call_llm(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        model_config=MODEL_CONFIG["interview_questions"],
        response_model=InterviewQuestions,
    )
    if result is None:
        raise ValueError("LLM returned no questions")

    questions = [q.strip() for q in result.questions if q.strip()][:QUESTION_COUNT]
    logger.info("Generated interview questions", count=len(questions))
    return questions


async def evaluate_interview(questions: list[str], answers: list[str]) -> InterviewEvaluation:
    system_prompt = "You are an expert interviewer."
    user_prompt = f"""Evaluate this candidate based on their answers to the interview questions below.
Ignore minor grammatical mistakes, assume the intended words, and keep a light hand.
Provide only:
1. A score out of 100
2. A brief summary of their overall performance.

{format_transcript(questions, answers)}"""

    result = await call_llm(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        model_config=MODEL_CONFIG["interview_evaluation"],
        response_model=InterviewEvaluation,
    )
    if result is None:
        raise ValueError("LLM returned no evaluation")

    logger.info("Evaluated interview", score=result.score, question_count=len(questions))
    return result
