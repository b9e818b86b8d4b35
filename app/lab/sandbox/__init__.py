from app.lab.sandbox.manager import SandboxManager
from app.lab.sandbox.session import ExperimentSession
from app.lab.sandbox.sweeper import SessionSweeper

__all__ = ["ExperimentSession", "SandboxManager", "SessionSweeper"]
