"""Agent API: runner, tools, compression, LLM client and REST app."""
