### dist_mnist/data.py
## Datasets, per-rank sharding, and loaders.

from __future__ import annotations

from typing import Iterator, Sized

import torch
from torch.utils.data import DataLoader, Dataset, Sampler, TensorDataset
from torchvision import datasets, transforms

from .config import ConfigError, TrainingConfig
from .model import NUM_CLASSES

MNIST_MEAN = 0.1307
MNIST_STD = 0.3081
IMAGE_SHAPE = (1, 28, 28)


def partition_indices(
    n: int,
    world_size: int,
    rank: int,
    shuffle: bool = False,
    seed: int = 0,
    epoch: int = 0,
) -> list[int]:
    """Return the dataset indices owned by ``rank``.

    The (optionally permuted) index range is dealt out round-robin, so shards
    are disjoint, cover every index exactly once, and differ in size by at
    most one. The permutation depends only on ``seed + epoch``, so every rank
    computes the same one without communicating.

    Args:
        n: Dataset size
        world_size: Number of shards
        rank: Shard to return, 0 <= rank < world_size
        shuffle: Permute before dealing
        seed: Base seed shared by all ranks
        epoch: Added to the seed so each epoch reshuffles

    Returns:
        List of indices for this rank
    """
    if n < 0:
        raise ValueError(f"dataset size must be non-negative, got {n}")
    if world_size < 1:
        raise ValueError(f"world_size must be positive, got {world_size}")
    if not 0 <= rank < world_size:
        raise ValueError(f"rank must be in [0, {world_size}), got {rank}")
    if shuffle:
        gen = torch.Generator()
        gen.manual_seed(seed + epoch)
        order = torch.randperm(n, generator=gen).tolist()
    else:
        order = list(range(n))
    return order[rank::world_size]


def shard_size(n: int, world_size: int, rank: int) -> int:
    base, extra = divmod(n, world_size)
    return base + (1 if rank < extra else 0)


class ShardSampler(Sampler[int]):
    """Sampler over one rank's shard; never pads or repeats samples."""

    def __init__(
        self,
        data_source: Sized,
        world_size: int,
        rank: int,
        shuffle: bool = False,
        seed: int = 0,
    ) -> None:
        self.n = len(data_source)
        self.world_size = world_size
        self.rank = rank
        self.shuffle = shuffle
        self.seed = seed
        self.epoch = 0

    def set_epoch(self, epoch: int) -> None:
        self.epoch = epoch

    def __iter__(self) -> Iterator[int]:
        return iter(
            partition_indices(self.n, self.world_size, self.rank, self.shuffle, self.seed, self.epoch)
        )

    def __len__(self) -> int:
        return shard_size(self.n, self.world_size, self.rank)


def mnist_transform() -> transforms.Compose:
    return transforms.Compose(
        [
            transforms.ToTensor(),
            transforms.Normalize((MNIST_MEAN,), (MNIST_STD,)),
        ]
    )


def synthetic_dataset(size: int, seed: int) -> TensorDataset:
    """Seeded random images and labels with MNIST shapes."""
    if size < 1:
        raise ConfigError(f"synthetic dataset size must be positive, got {size}")
    gen = torch.Generator()
    gen.manual_seed(seed)
    images = torch.randn((size, *IMAGE_SHAPE), generator=gen)
    labels = torch.randint(0, NUM_CLASSES, (size,), generator=gen)
    return TensorDataset(images, labels)


def build_dataset(cfg: TrainingConfig, train: bool = True) -> Dataset:
    if cfg.dataset == "synthetic":
        size = cfg.synthetic_train_size if train else cfg.synthetic_test_size
        # Distinct seeds keep the held-out set apart from the training set.
        return synthetic_dataset(size, cfg.seed if train else cfg.seed + 1)
    if cfg.dataset == "mnist":
        return datasets.MNIST(
            cfg.data_root,
            train=train,
            download=cfg.download,
            transform=mnist_transform(),
        )
    raise ConfigError(f"Unsupported dataset: {cfg.dataset}")


def build_train_loader(cfg: TrainingConfig, dataset: Dataset) -> DataLoader:
    sampler = ShardSampler(
        dataset,
        world_size=cfg.world_size,
        rank=cfg.rank,
        shuffle=cfg.shuffle,
        seed=cfg.seed,
    )
    return DataLoader(
        dataset,
        batch_size=cfg.per_worker_batch_size,
        sampler=sampler,
        pin_memory=cfg.device == "cuda",
    )


def build_test_loader(dataset: Dataset) -> DataLoader:
    """Whole held-out set as a single batch."""
    return DataLoader(dataset, batch_size=max(len(dataset), 1), shuffle=False)
