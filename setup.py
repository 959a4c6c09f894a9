from setuptools import setup

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="botwatch",
    version="0.3.0",
    description="botwatch - supervise a chat bot process and keep a report of every session",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=["botwatch"],
    py_modules=["dashboard"],
    python_requires=">=3.10",
    install_requires=[
        "flask>=2.0",
    ],
    extras_require={
        "test": ["pytest>=7.0", "requests>=2.28"],
    },
    entry_points={
        "console_scripts": [
            "botwatch=botwatch.cli:main",
            "botwatch-dashboard=dashboard:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Monitoring",
        "Topic :: System :: Logging",
    ],
    keywords="bot supervisor process monitoring session logs discord",
    license="MIT",
)
