"""
Setup script for torch-chain.

The package is pure PyTorch; there is no compiled extension.

To install for development:
    pip install -e ".[test]"

Set TORCH_CHAIN_VERBOSE=1 (or 2) at runtime to enable diagnostics logging.
"""

from pathlib import Path

from setuptools import find_packages, setup


def read_version():
    """Read __version__ from the package without importing it."""
    init = Path(__file__).parent / "src" / "torch_chain" / "__init__.py"
    for line in init.read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=")[1].strip().strip('"')
    raise RuntimeError("Could not find __version__ in torch_chain/__init__.py")


def main():
    setup(
        name="torch-chain",
        version=read_version(),
        description="Lattice-free MMI, KL and SMBR chain training objectives for PyTorch",
        license="Apache-2.0",
        python_requires=">=3.10",
        package_dir={"": "src"},
        packages=find_packages(where="src"),
        install_requires=["torch>=2.0"],
        extras_require={"test": ["pytest>=7.0"]},
    )


if __name__ == "__main__":
    main()
