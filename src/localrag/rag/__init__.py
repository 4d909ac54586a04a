"""localrag retrieval and orchestration."""
