import os
import sys

import pandas as pd
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'lib'))


def make_gene(rows, gene="PpyrOR1", strand="+", lg="LG1"):
    """Feature rows from (frag, feature, start, end, title) tuples."""
    return pd.DataFrame([
        {"gene": gene, "LG": lg, "frag": frag, "feature": feature,
         "start": start, "end": end, "strand": strand, "title": title}
        for frag, feature, start, end, title in rows
    ])


@pytest.fixture
def gene_factory():
    return make_gene
