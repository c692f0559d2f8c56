"""HTTP artifact store: receives archives published by matrixci runs."""
