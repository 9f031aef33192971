# setup.py
from setuptools import setup

setup(
    name='qasm-repl',
    version='0.2.0',
    description='Interactive OpenQASM interpreter with tags and loop blocks',
    py_modules=['qasm_engine', 'qasm_interpreter', 'qasm_repl'],
    python_requires='>=3.8',
    install_requires=['numpy'],
    extras_require={'test': ['pytest']},
    entry_points={'console_scripts': ['qasm-repl=qasm_repl:main']},
)
