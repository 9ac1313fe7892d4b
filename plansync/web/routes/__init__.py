"""PlanSync API route modules."""
