### dist_mnist/__init__.py
## Data-parallel MNIST training with manual gradient allreduce.
