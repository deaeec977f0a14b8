"""Module-level job functions for tests (collections pickle functions by reference)."""

import random
import sys


def subsample(data, job, ratio):
    """Instance function: random subset of the data rows."""
    return random.sample(data, int(len(data) * ratio))


def draw_instance(data, job):
    """Instance function depending only on the instance seed."""
    return [random.random() for _ in range(3)]


def identity(data, job, instance):
    return instance


def mean(data, job, instance):
    return sum(instance) / len(instance)


def seeds(data, job, instance):
    return {"seed": job.seed, "instance_seed": job.instance_seed, "draw": random.random()}


def scaled(data, job, instance, factor=1):
    return [x * factor for x in instance]


def square(x):
    return x * x


def add(x, y):
    return x + y


def fail_on(x, bad=2):
    if x == bad:
        raise ValueError(f"bad value {x}")
    return x


def random_draw(n):
    return [random.random() for _ in range(n)]


def summary(x):
    return {"value": x, "double": 2 * x}


def as_set(x):
    return {x}


def read_file(name):
    with open(name) as f:
        return f.read()


def exit_with(code):
    sys.exit(code)
