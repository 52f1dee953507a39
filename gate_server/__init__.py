"""
Gate server module.

FastAPI application receiving push and pull request events and exposing
gate run status. Execution is handled by the gate controller.
"""
