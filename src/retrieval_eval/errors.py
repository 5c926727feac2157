# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Exception hierarchy for the evaluation harness.

Setup errors abort a run before any work begins. Transient inference errors
are retried inside the inference client and never escape it.
"""


class RetrievalEvalError(Exception):
    """Base class for harness errors."""

    pass


class SetupError(RetrievalEvalError):
    """Unrecoverable problem detected before an experiment starts."""

    pass


class ConfigurationError(SetupError):
    """Invalid configuration values."""

    pass


class InferenceUnavailableError(SetupError):
    """The inference endpoint cannot be reached."""

    pass


class StoreUnavailableError(SetupError):
    """The entry store cannot be created (e.g. sqlite-vec not loadable)."""

    pass


class GroundTruthError(SetupError):
    """The query set is missing, malformed, or inconsistent with the corpus."""

    pass


class TransientInferenceError(RetrievalEvalError):
    """Connection reset or timeout while talking to the inference service."""

    pass
