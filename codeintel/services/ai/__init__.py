"""
AI request services.

- providers / llm_client / gateway: one backend behind a uniform contract
- selection: model registry, health cache and scoring
- orchestration: admission control, quality gates, adaptive concurrency
"""
