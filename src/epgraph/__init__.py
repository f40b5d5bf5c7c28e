from .dist import ExpFamily, Gaussian, Gamma, Bernoulli, Discrete, families
from .Range import Range
from .Observed import ObservedPlaceholder
from .Variable import VariableArray
from .Model import Model
from .factors import (
    Random,
    GaussianFromMeanAndPrecision,
    DiscreteFromTable,
    Copy,
    Subarray,
    Plus,
    Difference,
    IsGreater,
    ConstrainTrue,
    ConstrainFalse,
    ConstrainPositive,
    ConstrainBetween,
    Switch,
)
from .Schedule import Update, SequentialCarry
from .CompiledAlgorithm import CompiledInferenceAlgorithm
from .exceptions import *
from . import defaults
