"""Process-wide registry of metric descriptors"""
import threading
from typing import Dict, List, Optional
from .models import MetricDescriptor


class DescriptorConflictError(ValueError):
    """The same metric name was registered with a different shape"""


class UnregisteredDescriptorError(LookupError):
    """A sample refers to a metric name that was never registered"""


class DescriptorRegistry:
    """Holds every metric descriptor, keyed by fully-qualified name.

    Built once at process start and handed to the scrapers and the harness;
    descriptors are never rebuilt per scrape.
    """

    def __init__(self):
        self._descriptors: Dict[str, MetricDescriptor] = {}
        self._lock = threading.Lock()

    def register(self, descriptor: MetricDescriptor) -> MetricDescriptor:
        """Register a descriptor, returning the canonical instance"""
        with self._lock:
            existing = self._descriptors.get(descriptor.fq_name)
            if existing is None:
                self._descriptors[descriptor.fq_name] = descriptor
                return descriptor

            if existing != descriptor:
                raise DescriptorConflictError(
                    f"Metric {descriptor.fq_name} already registered with "
                    f"labels={list(existing.label_names)} type={existing.metric_type.value}, "
                    f"got labels={list(descriptor.label_names)} type={descriptor.metric_type.value}"
                )
            return existing

    def get(self, fq_name: str) -> Optional[MetricDescriptor]:
        return self._descriptors.get(fq_name)

    def require(self, fq_name: str) -> MetricDescriptor:
        """Get a descriptor or raise UnregisteredDescriptorError"""
        descriptor = self._descriptors.get(fq_name)
        if descriptor is None:
            raise UnregisteredDescriptorError(f"Metric {fq_name} is not registered")
        return descriptor

    def descriptors(self) -> List[MetricDescriptor]:
        return list(self._descriptors.values())

    def __contains__(self, fq_name: str) -> bool:
        return fq_name in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)
