"""Provider VM control."""
