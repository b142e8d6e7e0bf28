from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="clinicalsurvival",
    version="1.0.0",
    author="clinicalsurvival contributors",
    author_email="",
    description="Kaplan-Meier, log-rank, Cox regression and proportional hazards diagnostics "
                "for clinical time-to-event data",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["clinicalsurvival", "clinicalsurvival.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Intended Audience :: Healthcare Industry",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Medical Science Apps.",
    ],
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.21.0",
        "pandas>=1.3.0",
        "scipy>=1.7.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "clinicalsurvival=clinicalsurvival.cli:main",
        ],
    },
)
