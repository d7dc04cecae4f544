import warnings
from typing import Literal, Optional

from pydantic import BaseModel, Field, root_validator


class TrainingConfig(BaseModel):
    """Configuration for local prior matching (LPM) semi-supervised ASR training."""

    # Data settings
    train: str = Field(description="Manifest (JSONL) of paired audio/transcript training data")
    train_audio: Optional[str] = Field(
        default=None,
        description="Manifest (JSONL) of unpaired audio used for prior matching",
    )
    valid: str = Field(
        default="",
        description="Comma-separated validation manifests, each either 'path' or 'name:path'",
    )
    tokens: str = Field(default="tokens.txt", description="Token dictionary file name")
    tokens_dir: str = Field(default="", description="Directory holding the token dictionary")
    word_separator: str = Field(default="|", description="Token marking word boundaries in target sequences")
    num_features: int = Field(default=80, description="Dimension of the input acoustic features")
    batch_size: int = Field(default=8, description="Per-worker batch size for paired data")
    unpaired_batch_size: Optional[int] = Field(
        default=None,
        description="Per-worker batch size for unpaired audio (defaults to batch_size)",
    )
    paired_iter: int = Field(default=1, description="Paired batches drawn per epoch")
    audio_iter: int = Field(default=0, description="Unpaired-audio batches drawn per epoch (after warm-up)")
    audio_warmup_epochs: int = Field(
        default=0,
        description="Epochs over which the unpaired-audio volume ramps linearly up to audio_iter",
    )
    pretrain_window: int = Field(
        default=0,
        description="Number of paired-only epochs (with soft attention window) before prior matching starts",
    )
    scheduler_order: Literal["in_order", "uniform", "random"] = Field(
        default="uniform",
        description="Interleaving of data sources within an epoch",
    )
    no_resample: bool = Field(
        default=False,
        description="Shuffle each dataset once up front instead of reshuffling every pass",
    )
    pct_train_eval: float = Field(
        default=1.0,
        description="Percentage of paired training batches on which training error rates are measured",
    )

    # Model settings
    encoder_hidden: int = Field(default=256, description="Hidden size of the acoustic encoder")
    encoder_layers: int = Field(default=3, description="Number of bidirectional LSTM layers in the encoder")
    decoder_hidden: int = Field(default=256, description="Hidden size of the attention decoder")
    attention_window_std: float = Field(
        default=0.0,
        description="Std (in encoder frames) of the soft attention window used during pretraining; 0 disables",
    )
    max_decoder_output_len: int = Field(default=200, description="Maximum decoding steps during beam search")
    beam_size: int = Field(default=4, description="Beam size used to generate prior-matching hypotheses")
    label_smoothing: float = Field(default=0.0, description="Label smoothing of the supervised sequence loss")

    # LM critic / prior matching settings
    lm_model: Optional[str] = Field(default=None, description="Pretrained causal LM used as the prior")
    lm_temperature: float = Field(default=1.0, description="Temperature applied to LM log-probabilities")
    lm_temp_step_size: int = Field(
        default=1_000_000,
        description="Epochs between decays (by gamma) of the LM temperature",
    )
    use_uniform_lm: bool = Field(default=False, description="Replace the LM prior by a uniform prior (ablation)")
    shuffle_lm_prob: bool = Field(
        default=False,
        description="Permute LM probabilities within each hypothesis group (ablation)",
    )
    lm_weight: float = Field(default=1.0, description="Weight of the prior-matching loss")
    pm_type: Literal["oracle", "lpm"] = Field(
        default="lpm",
        description="'lpm' trains unpaired audio by prior matching, 'oracle' uses its reference transcripts",
    )
    pm_loss: str = Field(
        default="ce",
        description="Prior-matching divergence: 'ce', 'kl' or 'reverse_kl'",
    )
    adv_margin: float = Field(default=0.0, description="Margin subtracted from the LM advantage diagnostic")
    lm_length_norm: bool = Field(default=True, description="Length-normalise LM hypothesis log-probabilities")
    s2s_length_norm: bool = Field(default=True, description="Length-normalise acoustic hypothesis log-probabilities")
    hyp_len_ratio_lb: float = Field(
        default=0.0,
        description="Hypotheses shorter than this ratio of the reference length are discarded",
    )
    hyp_len_ratio_ub: float = Field(
        default=0.0,
        description="Hypotheses longer than this ratio of the reference length are discarded (<=0 disables)",
    )

    # Training hyperparameters
    epochs: int = Field(default=1, description="Total number of training epochs (including pretraining)")
    net_optim: Literal["sgd", "adam", "adamw", "adagrad", "rmsprop"] = "adam"
    lr: float = Field(default=1e-3, description="Learning rate")
    momentum: float = Field(default=0.0, description="Momentum (sgd/rmsprop)")
    weight_decay: float = Field(default=0.0, description="Weight decay")
    gamma: float = Field(default=1.0, description="Learning-rate decay factor")
    step_size: int = Field(default=1_000_000, description="Epochs between learning-rate decays")
    max_grad_norm: float = Field(default=0.0, description="Global gradient-norm clip (<=0 disables)")
    seed: int = Field(default=1337, description="Random seed for reproducibility")
    deterministic: bool = Field(default=False, description="Enable deterministic algorithms (may slow down)")
    debug: bool = Field(default=False, description="Verbose per-iteration diagnostics on every rank")

    # Run bookkeeping
    run_path: str = Field(default="runs", description="Directory receiving logs and snapshots")
    run_idx: int = Field(default=1, description="Index of this run inside run_path")
    report_iters: int = Field(
        default=0,
        description="Evaluate/log/checkpoint every N iterations (0 = once per epoch)",
    )
    start_epoch: int = Field(default=0, description="Epoch to resume from")
    start_iter: int = Field(default=0, description="Iteration to resume from")

    # Output and logging
    tensorboard_dir: Optional[str] = "tb"
    wandb_project: str = "local-prior-matching"
    wandb_entity: Optional[str] = None
    wandb_enabled: bool = True

    # Distributed training context (derived from torchrun environment)
    ddp_world_size: int = Field(default=1, description="World size for distributed runs")
    ddp_rank: int = Field(default=0, description="Global rank for distributed runs")
    ddp_local_rank: int = Field(default=0, description="Local rank for distributed runs")

    @root_validator(pre=True)
    def _fill_unpaired_batch_size(cls, values):
        if values.get("unpaired_batch_size") is None:
            values["unpaired_batch_size"] = values.get("batch_size", 8)
        lb = float(values.get("hyp_len_ratio_lb", 0.0) or 0.0)
        ub = float(values.get("hyp_len_ratio_ub", 0.0) or 0.0)
        if ub > 0 and lb > ub:
            raise ValueError(f"hyp_len_ratio_lb={lb} exceeds hyp_len_ratio_ub={ub}")
        if values.get("pm_type") == "oracle" and values.get("use_uniform_lm"):
            warnings.warn("use_uniform_lm has no effect with pm_type='oracle'", RuntimeWarning)
        return values


class TrainingMetrics(BaseModel):
    """Structure for one logged training step."""

    loss: float
    data_type: str
    epoch: int
    iteration: int
    num_hypos: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            f"train/{self.data_type}_loss": self.loss,
            "train/num_hypos": self.num_hypos,
            "train/epoch": self.epoch,
        }
