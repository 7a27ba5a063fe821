"""HTTP access for remote inputs and external payloads."""
