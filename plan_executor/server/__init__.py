"""HTTP surface for the plan executor (FastAPI)."""
