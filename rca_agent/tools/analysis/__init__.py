"""Analysis tools: dependency graphs, signals and fusion ranking."""
