from .encoder import AcousticEncoder, build_acoustic_model, num_total_params
from .lm_critic import LMCritic
from .seq2seq import (
    Seq2SeqCriterion,
    SequenceCriterion,
    SoftPretrainWindow,
    build_seq2seq,
    get_target_length,
)

__all__ = [
    "AcousticEncoder",
    "build_acoustic_model",
    "num_total_params",
    "LMCritic",
    "Seq2SeqCriterion",
    "SequenceCriterion",
    "SoftPretrainWindow",
    "build_seq2seq",
    "get_target_length",
]
