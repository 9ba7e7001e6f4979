"""Model backends, tools, and the chat orchestration core."""
