from setuptools import setup, find_packages

setup(
    name="ferdinand-drive-access",
    version="0.1",
    packages=find_packages(include=["ferdinand", "ferdinand.*"]),
    install_requires=[
        "fastapi",
        "uvicorn",
        "sqlalchemy>=2.0",
        "pydantic>=2",
        "pydantic-settings",
        "python-jose[cryptography]",
        "cryptography",
        "redis",
        "minio",
        "requests",
        "Pillow",
        "PyMuPDF",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
    python_requires=">=3.9",
)
