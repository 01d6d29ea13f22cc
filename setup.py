from setuptools import setup, find_packages


setup(
    name="cairn",
    version="0.1",
    packages=find_packages(include=["cairn", "cairn.*"]),
    description="A deduplicating, encrypted content-addressed repository for backups.",
    author="vercingetorx",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
    ],
    entry_points={
        "console_scripts": [
            "cairn=cairn.cli:main",
        ]
    },
)
