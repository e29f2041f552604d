"""Vote API service: submission, confirmation and public results."""
