from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable


logger = logging.getLogger(__name__)


def _configure_litellm() -> None:
    import litellm

    # Keep CLI output clean by hiding LiteLLM guidance banners in error paths.
    litellm.suppress_debug_info = True


def load_tokenizer(tokenizer_path: Path) -> dict[str, object]:
    """Build a LiteLLM custom tokenizer from a Hugging Face ``tokenizer.json``."""
    if not tokenizer_path.is_file():
        raise FileNotFoundError(f"Tokenizer file not found: {tokenizer_path}")

    _configure_litellm()
    from litellm import create_tokenizer

    logger.debug("Loading tokenizer from %s", tokenizer_path)
    return create_tokenizer(tokenizer_path.read_text(encoding="utf-8"))


def _count_tokens(
    text: str,
    model: str,
    custom_tokenizer: dict[str, object] | None,
    count_response_tokens: bool = False,
) -> int:
    fallback_count = len(text.split())
    try:
        _configure_litellm()
        from litellm import token_counter

        if custom_tokenizer is not None:
            token_count = int(
                token_counter(
                    custom_tokenizer=custom_tokenizer,
                    text=text,
                    count_response_tokens=count_response_tokens,
                )
            )
        else:
            token_count = int(
                token_counter(
                    model=model,
                    text=text,
                    count_response_tokens=count_response_tokens,
                )
            )
        if token_count >= 0:
            return token_count
    except Exception:  # noqa: BLE001
        logger.warning(
            "Token counting failed for model %r, falling back to word count",
            model,
            exc_info=True,
        )
    return fallback_count


def count_prompt_tokens(
    prompt: str,
    model: str,
    tokenizer_path: Path | None = None,
) -> int:
    if not prompt:
        return 0
    custom_tokenizer = load_tokenizer(tokenizer_path) if tokenizer_path is not None else None
    return _count_tokens(prompt, model, custom_tokenizer)


def make_output_token_counter(
    model: str,
    tokenizer_path: Path | None = None,
) -> Callable[[str], int]:
    """Return a counter for generated text, loading the tokenizer file once."""
    custom_tokenizer = load_tokenizer(tokenizer_path) if tokenizer_path is not None else None

    def count_output_tokens(text: str) -> int:
        if not text:
            return 0
        return _count_tokens(text, model, custom_tokenizer, count_response_tokens=True)

    return count_output_tokens
