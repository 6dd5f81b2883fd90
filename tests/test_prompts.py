from notes_ai_server.notes.prompts import (
    LOADING_MESSAGES,
    MAX_INPUT_CHARS,
    SYSTEM_PROMPTS,
    build_messages,
    check_input_length,
    estimate_tokens,
    summarize_prompt,
)


class TestPrompts:
    def test_every_task_has_prompt_and_loading_message(self):
        assert set(SYSTEM_PROMPTS) == set(LOADING_MESSAGES) == {
            "translation",
            "correction",
            "summary",
            "develop",
        }

    def test_build_messages(self):
        messages = build_messages("develop", "Develop text from these elements: idea")

        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPTS["develop"]}
        assert messages[1]["role"] == "user"

    def test_summarize_prompt_with_section(self):
        prompt = summarize_prompt("body", "Chapitre 1")
        assert prompt == " Summarize this text if needed: body\nSachant que c'est une sous-partie de : Chapitre 1"

    def test_summarize_prompt_without_section(self):
        assert summarize_prompt("body") == " Summarize this text if needed: body"


class TestInputLength:
    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcdefgh") == 2

    def test_at_limit_is_accepted(self):
        messages = [{"role": "system", "content": "a" * 4000}, {"role": "user", "content": "b" * 10000}]
        assert not check_input_length(messages)

    def test_over_limit_is_rejected(self):
        messages = [{"role": "user", "content": "x" * (MAX_INPUT_CHARS + 1)}]
        assert check_input_length(messages)
