# mem_hog.py: tries to go far beyond the memory budget
import time

chunks = []
size = 16 * 1024 * 1024
for i in range(1, 200):
    chunks.append(bytearray(size))
    if i % 4 == 0:
        print(f"allocated ~{i * 16} MB", flush=True)
    time.sleep(0.01)
print("survived")
