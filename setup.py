"""Setup script for flatzip"""
from setuptools import setup
from pathlib import Path
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text(encoding="utf-8") if readme_path.exists() else ""
setup(
    name="flatzip",
    version="1.0.0",
    author="flatzip Project",
    author_email="info@flatzip.dev",
    description="Collect files from nested directories into one flat, naturally ordered zip",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["flatzip"],
    python_requires=">=3.8",
    install_requires=[
        "rich>=13.0.0",
        "tqdm>=4.60.0",
    ],
    extras_require={
        "dev": ["pytest>=6.0.0", "black>=22.0.0", "flake8>=4.0.0", "pytest-asyncio"],
    },
    entry_points={
        "console_scripts": [
            "flatzip=flatzip:cli_main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Multimedia :: Sound/Audio",
        "Topic :: System :: Archiving",
    ],
)
