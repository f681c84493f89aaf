"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="chatbot-api",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn",
        "pydantic>=2",
        "pydantic-settings",
        "structlog",
        "redis>=5",
        "prometheus-client",
        "opentelemetry-instrumentation-fastapi",
        "google-generativeai",
        "langchain-core",
        "langchain-openai",
        "langchain-anthropic",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
            "fakeredis",
        ],
    },
)
