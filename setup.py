from setuptools import setup, find_packages

setup(
    name="microbiome_markers",
    version="0.1.0",
    packages=find_packages("src"),
    package_dir={"": "src"},
    install_requires=[
        # Core data processing
        "pandas>=1.3.0",
        "numpy>=1.20.0",
        "scipy>=1.7.0",

        # Statistical and scientific libraries
        "scikit-bio>=0.5.7",
        "statsmodels>=0.13.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    author="David Haslam",
    author_email="dbhaslam@gmail.com",
    description="Differential abundance markers for microbiome profiles with metagenomeSeq zero-inflated models",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    url="https://github.com/dhaslam/microbiome_markers",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "Intended Audience :: Science/Research",
    ],
    python_requires=">=3.8",
)
