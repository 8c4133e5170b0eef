# coding: utf-8
#
# This code is part of svdqmc.
#
# Copyright (c) 2022, Dylan Jones
#
# This code is licensed under the MIT License. The copyright notice in the
# LICENSE file in the root directory and this permission notice shall
# be included in all copies or substantial portions of the Software.

from setuptools import setup, find_packages


def requirements():
    with open("requirements.txt", "r") as f:
        return [line.strip() for line in f if line.strip()]


def long_description():
    with open("README.md", "r") as f:
        return f.read()


setup(
    name="svdqmc",
    version="0.1.0",
    author="Dylan Jones",
    author_email="dylanljones94@gmail.com",
    description="SVD-stabilized determinant quantum Monte Carlo of the Hubbard model",
    long_description=long_description(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    license="MIT License",
    install_requires=requirements(),
    extras_require={"test": ["pytest", "hypothesis"]},
    entry_points={"console_scripts": ["svdqmc=svdqmc.__main__:main"]},
    python_requires=">=3.7",
)
