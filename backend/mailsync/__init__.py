"""Email-driven job application status synchronization."""
