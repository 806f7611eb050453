from setuptools import setup, find_packages

setup(
    name="agent-recall",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "requests",
        "pyyaml",
        "numpy",
        # Code graph
        "networkx>=3.0",
        "tree-sitter>=0.25",
        "tree-sitter-python",
        "tree-sitter-javascript",
        "tree-sitter-typescript",
        "tqdm>=4.60",
    ],
    extras_require={
        # Semantic search over learnings (install separately when needed)
        "semantic": [
            "openai>=1.0",
        ],
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "agent-recall=agent_recall.cli:main",
        ],
    },
    author="Uday Kanth",
    description="Persistent memory for coding agents: workflow checkpoints, "
                "a knowledge graph, a code graph and a planning stack.",
)
