from __future__ import annotations

import abc


class Provider(abc.ABC):
    """
    Base class for all providers.
    Every concrete provider must declare a profile_family ('gcp' or 'oss').
    """

    @property
    @abc.abstractmethod
    def profile_family(self) -> str:
        """The profile family this provider belongs to."""
        pass
