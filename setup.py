from setuptools import setup, find_packages

setup(
    name="research-comparator",
    version="0.1.0",
    packages=find_packages(exclude=["comparator.tests", "comparator.tests.*"]),
    install_requires=[
        "pydantic>=2.0.0,<3.0.0",
        "PyYAML>=6.0",
        "python-dotenv>=0.19.0",
        "redis>=4.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    python_requires=">=3.9",
)
