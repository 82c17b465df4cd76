from setuptools import setup, find_packages

setup(
    name="raft_bench",
    version="1.0.0",
    description="Open-loop load generator for a raft-replicated key-value service",
    author="Varcas",
    packages=find_packages(include=["raft_bench", "raft_bench.*"]),
    python_requires=">=3.10",
    install_requires=[
        "click>=8.0",
        "numpy>=1.21",
        "grpcio>=1.59",
        "protobuf>=4.25",
        "zstandard>=0.21",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "raft-bench=raft_bench.cli.main:main",
        ],
    },
)
