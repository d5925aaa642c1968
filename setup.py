import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

requires = [
    'boltons>=18.0.1',
    'boto3>=1.26.0',
    'botocore>=1.29.0',
    'requests>=2.28.0',
    'tenacity>=8.4.0',
    'transitions>=0.9.0',
]

setuptools.setup(
    name = "NomadDrain",
    version = "0.1.0",
    author = "Jan Schumann",
    author_email = "js@schumann-it.com",
    description = "Drains nomad client nodes on aws autoscaling terminate lifecycle events",
    long_description = long_description,
    long_description_content_type = "text/markdown",
    install_requires = requires,
    extras_require = {
        'test': ['pytest'],
    },
    packages = setuptools.find_packages(exclude = ['tests', 'tests.*']),
    python_requires = '>=3.7',
    classifiers = (
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ),
)
