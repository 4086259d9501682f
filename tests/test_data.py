## Unit tests for sharding, datasets and loaders.

from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

# Check if torch is available
try:
    import torch
    TORCH_AVAILABLE = True
except ImportError:
    TORCH_AVAILABLE = False
    torch = None

pytestmark = pytest.mark.skipif(not TORCH_AVAILABLE, reason="PyTorch not available")

if TORCH_AVAILABLE:
    from dist_mnist import data
    from dist_mnist.config import ConfigError, TrainingConfig


def _cfg(**overrides):
    values = dict(
        master_addr="127.0.0.1",
        master_port=29500,
        world_size=1,
        rank=0,
        dataset="synthetic",
        synthetic_train_size=20,
        synthetic_test_size=6,
        total_batch_size=4,
    )
    values.update(overrides)
    return TrainingConfig(**values)


def test_partition_disjoint_and_complete():
    """N=100 over 4 ranks: pairwise disjoint, union is the whole dataset."""
    shards = [set(data.partition_indices(100, 4, r)) for r in range(4)]

    for i in range(4):
        for j in range(i + 1, 4):
            assert shards[i].isdisjoint(shards[j])
    union = set().union(*shards)
    assert len(union) == 100
    assert union == set(range(100))
    assert [len(s) for s in shards] == [25, 25, 25, 25]


@pytest.mark.parametrize("shuffle", [False, True])
def test_partition_uneven_sizes(shuffle):
    """Remainder samples go to the lowest ranks, nothing is padded or dropped."""
    shards = [data.partition_indices(10, 3, r, shuffle=shuffle, seed=5) for r in range(3)]

    assert [len(s) for s in shards] == [4, 3, 3]
    assert sorted(i for s in shards for i in s) == list(range(10))
    assert [data.shard_size(10, 3, r) for r in range(3)] == [4, 3, 3]


def test_partition_shuffle_is_deterministic():
    first = data.partition_indices(50, 2, 1, shuffle=True, seed=3, epoch=1)
    again = data.partition_indices(50, 2, 1, shuffle=True, seed=3, epoch=1)
    next_epoch = data.partition_indices(50, 2, 1, shuffle=True, seed=3, epoch=2)

    assert first == again
    assert first != next_epoch


def test_partition_without_shuffle_is_strided():
    assert data.partition_indices(10, 4, 1) == [1, 5, 9]


def test_partition_rejects_bad_rank():
    with pytest.raises(ValueError, match="rank must be in"):
        data.partition_indices(10, 2, 2)


def test_shard_sampler_len_and_epoch():
    dataset = list(range(11))
    sampler = data.ShardSampler(dataset, world_size=2, rank=0, shuffle=True, seed=0)

    assert len(sampler) == 6
    sampler.set_epoch(0)
    epoch0 = list(sampler)
    sampler.set_epoch(1)
    epoch1 = list(sampler)
    assert len(epoch0) == len(epoch1) == 6
    assert epoch0 != epoch1


def test_synthetic_dataset_shapes():
    dataset = data.synthetic_dataset(8, seed=1)

    image, label = dataset[0]
    assert tuple(image.shape) == data.IMAGE_SHAPE
    assert 0 <= int(label) < 10
    assert torch.equal(dataset.tensors[0], data.synthetic_dataset(8, seed=1).tensors[0])


def test_synthetic_dataset_rejects_empty():
    with pytest.raises(ConfigError):
        data.synthetic_dataset(0, seed=1)


def test_build_dataset_train_and_test_differ():
    cfg = _cfg()
    train = data.build_dataset(cfg, train=True)
    test = data.build_dataset(cfg, train=False)

    assert len(train) == 20
    assert len(test) == 6
    assert not torch.equal(train.tensors[0][:6], test.tensors[0])


def test_train_loader_uses_per_worker_batch():
    cfg = _cfg(world_size=2, rank=1, total_batch_size=4)
    loader = data.build_train_loader(cfg, data.build_dataset(cfg))

    batches = list(loader)
    assert len(loader.sampler) == 10
    assert [b[0].shape[0] for b in batches] == [2, 2, 2, 2, 2]


def test_test_loader_is_single_batch():
    cfg = _cfg()
    loader = data.build_test_loader(data.build_dataset(cfg, train=False))

    batches = list(loader)
    assert len(batches) == 1
    assert batches[0][0].shape[0] == 6


def test_mnist_transform_normalizes():
    transform = data.mnist_transform()
    norm = transform.transforms[-1]
    assert norm.mean == (data.MNIST_MEAN,)
    assert norm.std == (data.MNIST_STD,)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
