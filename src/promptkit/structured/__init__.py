"""Schema coercion and structured-output extraction."""
