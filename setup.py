from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()
readme = (here / "README.md").read_text(encoding="utf-8") if (here / "README.md").exists() else "spotseg: molecule-level cell segmentation with a graph-regularized Bayesian mixture."

setup(
	name="spotseg",
	version="0.1.0",
	description="Segmentation-free assignment of spatial transcriptomics molecules to cells via a spatial Bayesian mixture model",
	long_description=readme,
	long_description_content_type="text/markdown",
	author="spotseg Contributors",
	license="MIT",
	packages=find_packages(exclude=["tests", "tests.*"]),
	python_requires=">=3.9",
	install_requires=[
		"numpy>=1.23",
		"pandas>=1.5",
		"rich>=13",
		"pyarrow>=14",
		"pyyaml>=6",
		"shapely>=2.0",
		"scikit-learn>=1.2",
		"scipy>=1.10",
		"joblib>=1.3",
	],
	extras_require={
		"test": [
			"pytest>=7",
		],
	},
	classifiers=[
		"License :: OSI Approved :: MIT License",
		"Programming Language :: Python :: 3",
		"Programming Language :: Python :: 3 :: Only",
		"Programming Language :: Python :: 3.9",
		"Programming Language :: Python :: 3.10",
		"Programming Language :: Python :: 3.11",
		"Intended Audience :: Science/Research",
		"Topic :: Scientific/Engineering :: Bio-Informatics",
	],
)
