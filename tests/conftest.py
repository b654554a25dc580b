"""
Shared test setup.

Settings are read from the environment at import time, so the required
values are filled in before any callbot module is imported.
"""

import os

os.environ.setdefault("LLM_API_KEY", "test-llm-key")
os.environ.setdefault("LLM_API_URL", "https://llm.example.test/v1/chat/completions")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("ELEVENLABS_API_KEY", "test-elevenlabs-key")
os.environ.setdefault("ELEVENLABS_AGENT_ID", "agent_test")
os.environ.setdefault("ELEVENLABS_PHONE_NUMBER_ID", "phnum_test")
os.environ.setdefault("SESSION_SECRET_KEY", "test-session-secret")
