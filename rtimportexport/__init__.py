# rtimportexport package initialization
# DICOM-RT import (dose, plan, structure set, RT image) and DICOM-RT study export

__version__ = "1.0.0"

__all__ = [
    "config",
    "constants",
    "examiner",
    "reader",
    "hierarchy",
    "entities",
    "segmentation",
    "geometry",
    "loaders",
    "slicing",
    "export",
    "writer",
]
