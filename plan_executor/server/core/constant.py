"""
Server Constants.

Static values shared by the FastAPI application and its routers.
"""

PROJECT_NAME = "Plan Executor"
API_V1_STR = "/api/v1"
