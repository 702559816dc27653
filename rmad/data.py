import logging

import numpy as np
import torch
from torch.utils.data import DataLoader, TensorDataset

# Get logger
logger = logging.getLogger('rmad.data')


def make_xor(num_samples, noise=0.1, rng=None):
    """Points in [-1, 1]^2 labelled 1 where x and y share a sign."""
    rng = rng if rng is not None else np.random.default_rng()
    points = rng.uniform(-1.0, 1.0, size=(num_samples, 2))
    labels = (points[:, 0] * points[:, 1] > 0).astype(np.float64).reshape(-1, 1)
    points = points + rng.normal(0.0, noise, size=points.shape)
    return points, labels


def prepare_data(batch_size=16, num_train=1024, num_test=256, noise=0.1, seed=0):
    """
    Prepare the synthetic XOR train and test loaders.
    Partial batches are dropped since the network's input buffer has a fixed batch size.
    """
    logger.info(f"Preparing data with batch_size={batch_size}, num_train={num_train}, num_test={num_test}")
    rng = np.random.default_rng(seed)

    train_inputs, train_targets = make_xor(num_train, noise=noise, rng=rng)
    trainset = TensorDataset(torch.from_numpy(train_inputs), torch.from_numpy(train_targets))
    trainloader = DataLoader(dataset=trainset, batch_size=batch_size, shuffle=True, drop_last=True,
                             generator=torch.Generator().manual_seed(seed))
    logger.info(f"Training data created with {len(trainloader)} batches")

    test_inputs, test_targets = make_xor(num_test, noise=noise, rng=rng)
    testset = TensorDataset(torch.from_numpy(test_inputs), torch.from_numpy(test_targets))
    testloader = DataLoader(dataset=testset, batch_size=batch_size, shuffle=False, drop_last=True)
    logger.info(f"Test data created with {len(testloader)} batches")

    return trainloader, testloader
