import torch
from typing import Optional, Union
from transformers import AutoModelForCausalLM, AutoTokenizer

from ..data.dictionary import Dictionary
from .lm_critic import LMCritic


def load_lm(model_name: str, device: Union[str, torch.device] = "cpu"):
    """Load a causal LM and its tokenizer for use as a frozen prior."""

    # Prefer BF16 on supported GPUs, otherwise fall back to safe defaults.
    if torch.cuda.is_available() and torch.cuda.is_bf16_supported():
        torch_dtype = torch.bfloat16
    elif torch.cuda.is_available():
        torch_dtype = torch.float16
    else:
        torch_dtype = torch.float32

    print(f"[lm] Loading {model_name} on {device} ({torch_dtype})", flush=True)
    tokenizer = AutoTokenizer.from_pretrained(model_name)
    model = AutoModelForCausalLM.from_pretrained(
        model_name,
        torch_dtype=torch_dtype,
        low_cpu_mem_usage=False,
    )
    model.to(device)
    model.eval()
    print("[lm] Model loaded", flush=True)
    return model, tokenizer


def build_lm_critic(config, dictionary: Dictionary, device: Union[str, torch.device] = "cpu") -> Optional[LMCritic]:
    """Build the LM critic; None when prior matching never needs LM scores."""
    needs_lm = getattr(config, "pm_type", "lpm") == "lpm" and not getattr(config, "use_uniform_lm", False)
    if not needs_lm:
        return None
    model_name = getattr(config, "lm_model", None)
    if not model_name:
        raise ValueError("lm_model must be set when pm_type='lpm' and use_uniform_lm is off")
    model, tokenizer = load_lm(model_name, device)
    return LMCritic(model, tokenizer, dictionary, device=device)
