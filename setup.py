# This is the setup file for the MEG searchlight RSA repo. It is used to install the package and its dependencies.

from setuptools import setup, find_packages

setup(name='meg_rsa',
   version='0.1.0',
	packages=find_packages(exclude=["tests", "tests.*"]),
	python_requires=">=3.8",
	install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "statsmodels>=0.14",
        "h5py",
        "mne",
        "joblib",
        "tqdm",
        "pyyaml",
    ],
	extras_require={
		"test": ["pytest"],
	},
	entry_points={
		'console_scripts': [
			'meg-rsa = meg_rsa.pipeline:main',
		],
	},
)
