"""
AI boundary for the content pipeline.

- prompt_runner: Gemini JSON-mode calls with bounded retries, plus embeddings
- prompts: system/user prompt builders per stage
- schemas: response schemas for every prompt
"""
