from setuptools import setup, find_packages

setup(
    name="chainview",
    version="0.1.0",
    packages=find_packages(include=[
        "cache", "cache.*",
        "config", "config.*",
        "error_handling", "error_handling.*",
        "explorer", "explorer.*",
        "monitoring", "monitoring.*",
        "stats", "stats.*",
        "upstream", "upstream.*",
    ]),
    install_requires=[
        "fastapi",
        "uvicorn",
        "pydantic",
        "pydantic-settings",
        "structlog",
        "sqlalchemy>=2.0",
        "aiohttp",
        "prometheus-client",
        "slowapi",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "chainview-explorer=explorer.app:main",
        ],
    }
)
