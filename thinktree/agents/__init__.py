"""Session-level agents: engine selection and orchestration."""
