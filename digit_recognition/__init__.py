"""
digit_recognition package
~~~~~~~~~~~~~~~~~~~~~~~~~

Feedforward neural network for MNIST handwritten digit recognition.
Contains the IDX dataset parser and transforms, the network
implementation, training orchestration, model persistence, and API server.
"""

__version__ = "1.0.0"
