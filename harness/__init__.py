"""
Stub simulator speaking the control protocol, for tests and dry runs.
Run it as `python -m harness.stub_simulator <config>`; nothing is re-exported
here so that `-m` does not import the module twice.
"""
