"""Setup script for gamboost package."""
from setuptools import setup, find_packages

setup(
    name="gamboost",
    version="0.1.0",
    description="Generalized Additive Models for regression fitted by bin-wise gradient boosting",
    author="AML Project",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.24.0",
        "pandas>=2.0.0",
        "scikit-learn>=1.3.0",
        "joblib>=1.3.0",
        "matplotlib>=3.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
        ]
    },
)
