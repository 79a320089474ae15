# bpmf/errors.py


class BPMFError(Exception):
    """Base class for every error that ends a sampling run."""


class MatrixLoadError(BPMFError):
    """A ratings or probe file is missing, malformed or has the wrong shape."""


class ConfigError(BPMFError):
    """Run configuration is missing a required value or holds an invalid one."""


class NumericalError(BPMFError):
    """
    A precision or covariance matrix failed its Cholesky decomposition.
    side/entity identify where it happened (entity is None for hyperparameters).
    """
    def __init__(self, message, side=None, entity=None):
        self.side = side
        self.entity = entity
        where = []
        if side is not None:
            where.append(f"side={side}")
        if entity is not None:
            where.append(f"entity={entity}")
        if where:
            message = f"{message} ({', '.join(where)})"
        super().__init__(message)
