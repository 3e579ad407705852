from app.models.experiment import AssignmentRecord, ExperimentRecord  # noqa: F401
