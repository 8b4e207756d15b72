"""AI service helpers (history summarization)."""

from .summarizer import CompletionSummarizer, condense_text, render_transcript

__all__ = ["CompletionSummarizer", "condense_text", "render_transcript"]
