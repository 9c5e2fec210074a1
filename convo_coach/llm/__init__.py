"""Language model access: prompts and the chat completion client."""
