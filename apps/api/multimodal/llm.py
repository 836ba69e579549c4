import logging
from openai import OpenAI

from .audio import get_openai_client

logger = logging.getLogger(__name__)

# Keep the prompt well inside the model context window (~3000 tokens of transcript).
MAX_TRANSCRIPT_WORDS = 2000


def truncate_to_word_limit(text: str, max_words: int) -> str:
    """Trim text to at most max_words words, marking the cut with an ellipsis."""
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + "..."


def generate_video_description(
    transcript: str,
    title: str,
    api_key: str,
    max_words: int = 100,
    model: str = "gpt-3.5-turbo",
) -> str:
    """
    Generate a concise LMS description from a video transcript.

    Args:
        transcript: Full plain-text transcript
        title: Video title, used as context for the model
        api_key: OpenAI API key
        max_words: Upper bound on description length
        model: Chat completion model
    """
    client: OpenAI = get_openai_client(api_key)
    if client is None:
        raise RuntimeError("OPENAI_API_KEY environment variable is not set")

    truncated_transcript = truncate_to_word_limit(transcript, MAX_TRANSCRIPT_WORDS)

    system_prompt = f"""
    You are an educational content specialist. Your task is to write concise, informative video descriptions for an LMS (Learning Management System).

    The description should:
    - Be {max_words} words or fewer
    - Summarize the key topics and learning objectives
    - Be written in a professional, educational tone
    - Focus on what students will learn
    - Avoid marketing language
    - Use present tense
    """

    try:
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": f"Write a {max_words}-word description for this video:\n\nTitle: {title}\n\nTranscript:\n{truncated_transcript}",
                },
            ],
            max_tokens=200,
            temperature=0.7,
        )
    except Exception as e:
        logger.error(f"Error generating video description: {e}")
        raise

    description = (response.choices[0].message.content or "").strip() if response.choices else ""
    if not description:
        raise RuntimeError("OpenAI returned empty description")
    return truncate_to_word_limit(description, max_words)
