class ExperimentError(Exception):
    """Base class for experimentation engine errors."""


class InvalidConfig(ExperimentError):
    """Raised when an experiment definition is malformed at creation time."""


class ExperimentNotFound(ExperimentError):
    def __init__(self, experiment_id: str):
        self.experiment_id = experiment_id
        super().__init__(f"Experiment not found: {experiment_id}")


class InsufficientData(ExperimentError):
    """Raised by the significance test when an arm has no exposures."""
