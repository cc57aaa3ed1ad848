"""Rachel: conversation context lifecycle for a chat assistant."""
