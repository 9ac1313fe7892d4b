"""Field mapping between partner payloads and canonical models."""
