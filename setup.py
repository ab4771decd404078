from setuptools import setup, find_packages

setup(
    name="hybrid_kb",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "requests",
        "pyyaml",
        "numpy>=1.21",
        # Approximate nearest-neighbour backend
        "hnswlib>=0.7",
        "tqdm>=4.60",
    ],
    extras_require={
        # Cloud embeddings (install separately when needed)
        "openai": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "hybridkb=hybrid_kb.kb.cli:main",
        ],
    },
    description="Incremental document indexing with hybrid lexical + vector retrieval.",
)
