"""Errors and warnings raised while assembling and decomposing TOM tensors."""


class NCPError(Exception):
    """Base class for fatal tensor assembly / decomposition errors."""


class EmptyInput(NCPError, ValueError):
    """No condition matrices were supplied."""


class ShapeMismatch(NCPError, ValueError):
    """Condition matrices do not share the same (rows, cols) shape."""


class LabelMismatch(NCPError, ValueError):
    """Condition matrices disagree on gene ordering, or labels repeat."""


class InvalidInput(NCPError, ValueError):
    """Tensor is not 3-D, has negative / non-finite entries, or is all zero."""


class InvalidRank(NCPError, ValueError):
    """Requested rank is not a positive integer."""


class NumericDegeneracy(RuntimeWarning):
    """A factor column collapsed during HALS and was epsilon-guarded."""
