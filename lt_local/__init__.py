"""Learning Tracker local state store and progress tracking."""
