"""Exceptions and warnings raised by scpaired."""

from sklearn.exceptions import ConvergenceWarning as _SklearnConvergenceWarning


class ScpairedError(Exception):
    """Base class for scpaired errors."""


class SchemaError(ScpairedError, ValueError):
    """Input matrices disagree on features, cells, or shape."""


class DimensionError(ScpairedError, ValueError):
    """A requested dimensionality is not achievable for the input."""


class ConfigError(ScpairedError, ValueError):
    """Training or reduction configuration is inconsistent."""


class MissingProjectionError(ScpairedError, KeyError):
    """A differential was requested without both directed projections."""


class DuplicateTagError(ScpairedError, KeyError):
    """An artifact with this tag already exists in the store."""


class ConvergenceWarning(_SklearnConvergenceWarning):
    """Training loss did not decrease over the trailing window.

    The trained model is still returned and usable.
    """
