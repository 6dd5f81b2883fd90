"""Prompt texts and input validation for the AI tasks."""

from typing import Iterable, Mapping

TRANSLATION = "translation"
CORRECTION = "correction"
SUMMARY = "summary"
DEVELOP = "develop"

SYSTEM_PROMPTS = {
    TRANSLATION: (
        "You are a professional translator. Translate markdown text from French to English "
        "without introduction, explanation or context, just write the translation. Keep the "
        'markdown formatting. Don\'t say "here is the translation" or "the translation is", '
        "just write the translation."
    ),
    CORRECTION: (
        "You are a high-level grammar expert. You must transcribe each text word for word "
        "while correcting spelling errors."
    ),
    SUMMARY: (
        "You are a writer. Summarize texts if needed. As a writer, you should not add "
        "information or introductory phrases to your work. For example, don't write "
        "'Here is the summary of the text'"
    ),
    DEVELOP: "You are a great writer. Write text from the few ideas given to you.",
}

LOADING_MESSAGES = {
    TRANSLATION: "Document translation in progress. Generating response...",
    CORRECTION: "Document correction in progress. Generating response...",
    SUMMARY: "Document summary in progress. Generating response...",
    DEVELOP: "Document development in progress. Generating response...",
}

TRANSLATE_PREFIX = "Translate this text to English and keep the markdown formatting : "
CORRECT_PREFIX = (
    "I want you to copy this text word for word while correcting spelling errors in French "
    "without introduction, explanation or context, just write the correction: "
)
SUMMARIZE_PREFIX = " Summarize this text if needed: "
SECTION_CONTEXT = "\nSachant que c'est une sous-partie de : "
DEVELOP_PREFIX = "Develop text from these elements: "
INTERMEDIATE_SUMMARY = "Intermediate summary: "

TRANSLATION_PLACEHOLDER = "Translation in progress…"
CORRECTION_PLACEHOLDER = "Correction in progress…"
SUMMARY_PLACEHOLDER = "Summary in progress…"

LOADING_MODEL = "Loading model..."
LOADING_FROM_CACHE = "Loading model into RAM..."
DOWNLOADING_WEIGHTS = "Downloading model weights to your browser cache, this may take a few minutes."

INPUT_TOO_LONG = (
    "This block text is too long. Please shorten the text or split it into multiple blocks."
)
GENERIC_ERROR = "Error. Please try again."
LOAD_FAILURE_PREFIX = "Could not load the model because "

CHARS_PER_TOKEN = 4
# 3500 tokens at 4 characters per token
MAX_INPUT_CHARS = 14000


def build_messages(task: str, prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPTS[task]},
        {"role": "user", "content": prompt},
    ]


def summarize_prompt(text: str, section_title: str | None = None) -> str:
    if section_title is None:
        return SUMMARIZE_PREFIX + text
    return SUMMARIZE_PREFIX + text + SECTION_CONTEXT + section_title


def estimate_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN


def check_input_length(messages: Iterable[Mapping[str, str]]) -> bool:
    """True when the messages together are too long to send."""
    total = sum(len(message.get("content") or "") for message in messages)
    return total > MAX_INPUT_CHARS
