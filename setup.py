from setuptools import setup, find_packages

setup(
    name="synthetix-erc7412",
    version="0.1.0",
    description="Synthetix client with ERC-7412 oracle fulfillment",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Synthetix DAO",
    package_dir={"": "src"},
    packages=find_packages("src", exclude=["tests", "tests.*"]),
    package_data={
        "synthetix_erc7412": [
            "contracts/common/*.json",
        ]
    },
    install_requires=[
        "requests",
        "web3>=7.0.0",
        "eth-abi>=5.0.0",
        "eth-utils>=5.0.0",
        "eth-typing",
    ],
    extras_require={
        "test": [
            "pytest",
            "python-dotenv",
        ],
    },
    classifiers=[
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    include_package_data=True,
)
