from setuptools import setup, find_packages

setup(
    name="tracegrad",
    version="0.1.0",
    description="Graph-to-graph reverse-mode automatic differentiation over numpy",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=["numpy>=1.25"],
)
