[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "appsub"
version = "0.1.0"
description = "Subscription model and hub reconciler that distributes subscriptions to managed clusters through deployables"
requires-python = ">=3.10"
dependencies = []
keywords = ["subscription", "deployable", "channel", "reconciler", "multicluster", "operator"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
appsub-manager = "appsub.manager:main"

[tool.hatch.build.targets.wheel]
packages = ["appsub"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
