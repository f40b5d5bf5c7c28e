from setuptools import setup, find_packages

setup(
    name = "epgraph",
    version = "0.0.1",
    keywords = ("expectation propagation", "factor graph", "inference"),
    license = "MIT Licence",
    packages=['epgraph'],
    package_dir={'':'src'},
    python_requires='>=3.9.0',
    install_requires=[
        "torch>=2.0.0",
        "opt_einsum",
    ],
    extras_require={
        "test": ["pytest"],
    },
    include_package_data = True,
    platforms = "any",
)
