from setuptools import setup, find_packages

setup(
    name="dump-exam-kit",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10",
    install_requires=[
        "click>=8.0",
        "openpyxl>=3.0",
        "cryptography>=41.0",
        "sqlalchemy>=2.0",
        "pyyaml>=6.0",
        "flask>=2.2",
        "beautifulsoup4>=4.12",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "dump-exam=dump_exam_toolkit.cli:main",
        ],
    },
)
