"""Migration sources: the version index, the driver registry, and file, directory, asset and stub sources."""