from .dataset import PAIRED, UNPAIRED, Sample, SpeechDataset, create_dataset, load_manifest
from .dictionary import EOS_TOKEN, TARGET_PAD, Dictionary, load_dictionary
from .scheduler import DataScheduler

__all__ = [
    "PAIRED",
    "UNPAIRED",
    "Sample",
    "SpeechDataset",
    "create_dataset",
    "load_manifest",
    "EOS_TOKEN",
    "TARGET_PAD",
    "Dictionary",
    "load_dictionary",
    "DataScheduler",
]
