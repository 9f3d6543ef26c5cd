# Configuration for the Director action critic
#
# All values load from environment variables with local-development defaults.
# A llama.cpp server started with `--port 8080` works without any overrides.
# Create a .env file or export variables to point at another server.

import os

# llama.cpp server (OpenAI-compatible API)
LLAMA_SERVER_URL = os.getenv("LLAMA_SERVER_URL", "http://127.0.0.1:8080/v1")
LLAMA_API_KEY = os.getenv("LLAMA_API_KEY", "sk-no-key-required")  # llama.cpp ignores it
LLAMA_MODEL = os.getenv("LLAMA_MODEL", "local-model")

# Transport settings
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
LLAMA_CONNECT_ATTEMPTS = int(os.getenv("LLAMA_CONNECT_ATTEMPTS", "5"))

# Critic settings
CRITIC_TOP_LOGPROBS = int(
    os.getenv("CRITIC_TOP_LOGPROBS", "10")
)  # Wide enough to catch casing/whitespace variants of yes/no
CRITIC_STATS_FILE = os.getenv("CRITIC_STATS_FILE", "critic_statistics.json")

# Example .env file content:
# LLAMA_SERVER_URL=http://127.0.0.1:8080/v1
# LLAMA_MODEL=qwen2.5-7b-instruct
# CRITIC_TOP_LOGPROBS=10
# CRITIC_STATS_FILE=critic_statistics.json
