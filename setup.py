import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="dualregistry",
    version="0.1.0",
    description="Container image registry client speaking both the v1 and v2 protocols",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    install_requires=[
        "requests>=2.22"
    ],
    extras_require={
        "test": ["pytest"],
    },
    test_suite="tests",
    python_requires=">=3.7",
)
