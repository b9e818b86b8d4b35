from app.models.lab import LAB_TABLES, LabAPICall, LabBaseline, LabExperiment, LabUserProgress

__all__ = [
    "LAB_TABLES",
    "LabExperiment",
    "LabAPICall",
    "LabBaseline",
    "LabUserProgress",
]
