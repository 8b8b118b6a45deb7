[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vamana"
version = "0.1.0"
description = "Graph-based approximate nearest neighbour index with bin-file I/O and product-quantisation tables"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = [
    "nearest-neighbor",
    "ann",
    "vector-search",
    "graph-index",
    "product-quantization",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Information Analysis",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["vamana"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
