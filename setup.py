from setuptools import setup, find_packages

setup(
    name="facility_monitor",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"facility_monitor.services": ["*.yaml"]},
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "sqlalchemy[asyncio]",
        "asyncpg",
        "python-jose[cryptography]",
        "httpx",
        "openai",
        "anthropic",
        "pyyaml",
        "python-dotenv",
        "pydantic>=2",
        "websockets"
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "pytest-timeout"
        ]
    },
)
