"""LPM: local prior matching for semi-supervised sequence-to-sequence speech recognition.

Acoustic models are trained on paired audio/transcripts with a supervised sequence
loss and on unpaired audio by matching the distribution of their own beam-search
hypotheses against the prior of a pretrained language model.
"""

from .config import TrainingConfig, TrainingMetrics
from .errors import FatalNumericalError

__version__ = "0.1.0"
__all__ = [
    "TrainingConfig",
    "TrainingMetrics",
    "FatalNumericalError",
]
