import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from upload_customs.exceptions import CustomsError
    from upload_customs.iterator import ATTRIBUTES, UploadIterator, gather, resolve_names


def congruent_descriptor(fdp: EnhancedDataProvider) -> dict:
    descriptor = {}
    for _ in range(fdp.ConsumeIntInRange(0, 4)):
        shape = fdp.ConsumeTree()
        entry = {attribute: shape for attribute in ATTRIBUTES}
        entry["error"] = fdp.ConsumeIntInRange(-1, 9)
        descriptor[fdp.ConsumeShortString()] = entry
    return descriptor


def random_descriptor(fdp: EnhancedDataProvider) -> dict:
    return {
        fdp.ConsumeShortString(): {attribute: fdp.ConsumeTree() for attribute in ATTRIBUTES}
        for _ in range(fdp.ConsumeIntInRange(0, 4))
    }


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    build = fdp.PickValueInList([congruent_descriptor, random_descriptor])
    descriptor = build(fdp)

    try:
        for name in resolve_names(descriptor):
            gather(descriptor, name)
        UploadIterator(descriptor)
    except CustomsError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
