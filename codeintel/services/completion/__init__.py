"""Completion surface: context classification, relevance ranking, AI merge."""
