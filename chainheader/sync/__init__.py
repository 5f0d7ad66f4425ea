"""Header synchronization from a getter into a local store."""