from setuptools import setup, find_packages

setup(
    name="devmemory",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pyyaml",
        "numpy",
        # Semantic memory
        "fastembed",
        "networkx>=3.0",
        # Code index
        "tree-sitter>=0.22",
        "tree-sitter-python",
        "tree-sitter-javascript",
        "tree-sitter-typescript",
        "watchdog>=3.0",
        "tqdm>=4.60",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "devmem=devmemory.cli:main",
        ],
    },
    author="Uday Kanth",
    description="Local developer memory and incremental code index.",
)
