"""
Setup configuration for RestoreScale
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="restorescale",
    version="1.0.0",
    description="Tiled face restoration and super-resolution pipeline on ONNX Runtime",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["restorescale", "restorescale.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Scientific/Engineering :: Image Processing",
    ],
    python_requires=">=3.9",
    install_requires=[
        "numpy>=2.0.0",
        "opencv-python>=4.10.0",
        "Pillow>=11.0.0",
        "python-dotenv>=1.0.1",
        "requests>=2.32.0",
        "onnxruntime>=1.18.0",
        "fastapi>=0.110.0",
        "python-multipart>=0.0.9",
        "uvicorn>=0.29.0",
    ],
    extras_require={
        "dev": [
            "pytest>=8.3.3",
            "pytest-cov>=6.0.0",
            "httpx>=0.27.0",
            "black>=24.10.0",
            "flake8>=7.1.1",
            "mypy>=1.13.0",
        ],
    },
)
