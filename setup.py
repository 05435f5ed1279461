from setuptools import setup, find_packages

setup(
    name="queryproxy",
    version="0.1.0",
    packages=find_packages(include=["queryproxy", "queryproxy.*"]),
    python_requires=">=3.12",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "httpx>=0.27",
        "pydantic>=2.6",
        "pydantic-settings>=2.7",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "respx>=0.21",
        ],
    },
)
