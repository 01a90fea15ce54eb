"""Applications built on retrystack."""
